"""
Project / loan lifecycle.

    active -> funded -> borrowing -> repaid      (loan model)
    active -> funded -> completed                (direct model)

Status only ever moves forward along ALLOWED_TRANSITIONS. These helpers mutate ORM objects in
memory; persisting them (inside the caller's transaction, under the project lock) is the
reconciler's job.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from models import Loan, Project
from services import financial
from services.errors import PreconditionError


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    FUNDED = "funded"
    BORROWING = "borrowing"
    REPAID = "repaid"
    COMPLETED = "completed"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    REPAID = "repaid"
    DEFAULTED = "defaulted"


class CommitmentStatus(str, Enum):
    ACTIVE = "active"
    # reported, never stored: derived from lockup_expiry at read time
    LOCKED = "locked"


class LendingModel(str, Enum):
    # Creator borrows the escrowed capital and repays principal + interest into the escrow
    LOAN = "loan"
    # Creator receives the funds outright; no repayment cycle
    DIRECT = "direct"


ALLOWED_TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.ACTIVE: frozenset({ProjectStatus.FUNDED}),
    ProjectStatus.FUNDED: frozenset({ProjectStatus.BORROWING, ProjectStatus.COMPLETED}),
    ProjectStatus.BORROWING: frozenset({ProjectStatus.REPAID}),
    ProjectStatus.REPAID: frozenset(),
    ProjectStatus.COMPLETED: frozenset(),
}

TERMINAL_STATUSES = frozenset({ProjectStatus.REPAID, ProjectStatus.COMPLETED})


def status_of(project: Project) -> ProjectStatus:
    return ProjectStatus(project.status)


def can_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(project: Project, target: ProjectStatus) -> None:
    current = status_of(project)
    if not can_transition(current, target):
        raise PreconditionError(
            f"Cannot move project {project.id} from status '{current.value}' to '{target.value}'"
        )
    project.status = target.value


def is_fully_funded(project: Project) -> bool:
    return Decimal(project.current_funding) >= Decimal(project.goal_amount)


def apply_commitment(project: Project, fee: Decimal, net: Decimal) -> bool:
    """
    Book a commitment's net amount as funding and its fee as collected.
    Returns True when this commitment moved the project from active to funded.
    """
    if status_of(project) not in (ProjectStatus.ACTIVE, ProjectStatus.FUNDED):
        raise PreconditionError(
            f"Project {project.id} is '{project.status}' and no longer accepts commitments"
        )
    project.current_funding = Decimal(project.current_funding or 0) + net
    project.platform_fee_paid = Decimal(project.platform_fee_paid or 0) + fee
    if status_of(project) == ProjectStatus.ACTIVE and is_fully_funded(project):
        transition(project, ProjectStatus.FUNDED)
        return True
    return False


def ensure_withdrawable(project: Project) -> None:
    if status_of(project) != ProjectStatus.FUNDED:
        raise PreconditionError(f"Cannot withdraw from project with status: {project.status}")
    if not is_fully_funded(project):
        raise PreconditionError("Project must be fully funded before withdrawal")


def ensure_checkable(project: Project) -> None:
    if status_of(project) != ProjectStatus.BORROWING:
        raise PreconditionError(
            f"Project has not been withdrawn yet (status: {project.status}); "
            f"only projects with status '{ProjectStatus.BORROWING.value}' can be checked for repayment"
        )


def complete_withdrawal(
    project: Project,
    amount: Decimal,
    tx_ref: str,
    now: datetime,
    model: LendingModel,
    loan_term_days: int,
) -> Loan | None:
    """
    Record the payout on the project and advance its status. Under the loan model a Loan is
    opened with interest fixed from the project's current rate; the caller adds it to the session.
    """
    ensure_withdrawable(project)
    project.withdrawal_tx_ref = tx_ref
    project.withdrawal_amount = amount
    project.withdrawn_at = now
    if model == LendingModel.DIRECT:
        transition(project, ProjectStatus.COMPLETED)
        return None
    transition(project, ProjectStatus.BORROWING)
    return open_loan(project, amount, tx_ref, now, loan_term_days)


def open_loan(project: Project, amount: Decimal, tx_ref: str, now: datetime, loan_term_days: int) -> Loan:
    principal, interest_amount, total = financial.loan_terms(amount, project.interest_rate)
    return Loan(
        id=f"loan-{uuid.uuid4().hex[:12]}",
        project_id=project.id,
        borrower_address=project.creator_address,
        principal=principal,
        interest_rate=Decimal(project.interest_rate),
        interest_amount=interest_amount,
        total_repayment=total,
        status=LoanStatus.ACTIVE.value,
        due_date=now + timedelta(days=loan_term_days),
        borrowed_at=now,
        withdrawal_tx_ref=tx_ref,
    )


def close_loan(project: Project, loan: Loan, observed_balance: Decimal, now: datetime) -> None:
    if LoanStatus(loan.status) != LoanStatus.ACTIVE:
        raise PreconditionError(f"Loan {loan.id} is '{loan.status}', not active")
    transition(project, ProjectStatus.REPAID)
    amount = financial.quantize_money(observed_balance)
    loan.status = LoanStatus.REPAID.value
    loan.actual_repayment_amount = amount
    loan.actual_repayment_date = now
    project.repaid_at = now
    project.repayment_amount = amount
