"""
Settlement reconciler: the single writer of project status, withdrawal and loan-closing fields.

Every operation runs under the project's lock (ProjectLocks + SELECT ... FOR UPDATE + the
projects.version counter) from precondition check to the final commit, so a withdrawal and a
repayment check on the same project never interleave.

withdraw
    One-shot payout of the escrow balance to the creator. A withdrawal intent is committed before
    the signed transfer is submitted; a retry after a crash looks the payout up in the ledger's
    transfer history instead of paying twice. Local state is committed only after finality.

check_repayment
    Polls the escrow balance, appends a RepaymentCheck unconditionally, and closes loan and
    project once the balance covers the fixed total repayment. Re-running on a repaid project
    returns the stored result without touching state.

check_all_pending
    Runs check_repayment for every borrowing project through a bounded worker pool with a small
    delay between launches; one project's failure never aborts the batch.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from models import Commitment, Loan, Project
from services import audit, financial, lifecycle
from services.audit import CheckerSource, SettlementAction
from services.custody import CustodialKeypair, KeyCustody, is_valid_address
from services.errors import (
    ConcurrencyError,
    CustodyIntegrityError,
    FinalityTimeoutError,
    LedgerError,
    NotFoundError,
    PreconditionError,
    SettlementError,
    UnauthorizedError,
    ValidationError,
)
from services.ledger import LedgerClient, TransferReceipt, TransferStatus
from services.lifecycle import CommitmentStatus, LendingModel, LoanStatus, ProjectStatus
from services.locks import ProjectLocks

logger = logging.getLogger("bochica.reconciler")


@dataclass(frozen=True)
class ReconcilerConfig:
    asset_id: int = 1984
    asset_decimals: int = 6
    finality_timeout_seconds: float = 60.0
    platform_fee_rate: Decimal = financial.PLATFORM_FEE_RATE
    loan_term_days: int = 30
    lending_model: str = LendingModel.LOAN.value
    check_delay_seconds: float = 1.0
    check_workers: int = 4


@dataclass
class WithdrawalResult:
    project_id: str
    tx_ref: str
    amount: Decimal
    status: str
    already_processed: bool = False
    loan: Optional[Loan] = None


@dataclass
class RepaymentResult:
    project_id: str
    repaid: bool
    expected_amount: Decimal
    current_balance: Optional[Decimal] = None
    remaining: Optional[Decimal] = None
    percentage_repaid: Optional[Decimal] = None
    overpayment: Optional[Decimal] = None
    already_repaid: bool = False
    message: str = ""
    loan: Optional[Loan] = None


@dataclass
class CommitmentResult:
    commitment: Commitment
    project_status: str
    current_funding: Decimal
    newly_funded: bool = False
    duplicate: bool = False


@dataclass
class BatchCheckItem:
    project_id: str
    title: str
    result: Optional[RepaymentResult] = None
    error: Optional[dict[str, str]] = None


@dataclass
class BatchCheckSummary:
    checked_at: datetime
    total_checked: int = 0
    newly_repaid: int = 0
    still_pending: int = 0
    failed: int = 0
    results: list[BatchCheckItem] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettlementReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        custody: KeyCustody,
        ledger: LedgerClient,
        config: Optional[ReconcilerConfig] = None,
        locks: Optional[ProjectLocks] = None,
    ):
        self.session_factory = session_factory
        self.custody = custody
        self.ledger = ledger
        self.config = config or ReconcilerConfig()
        self.locks = locks or ProjectLocks()
        self.lending_model = LendingModel(self.config.lending_model)

    # ── Shared helpers ────────────────────────────────────────

    async def _load_project(self, session: AsyncSession, project_id: str) -> Project:
        result = await session.execute(
            select(Project).where(Project.id == project_id).with_for_update()
        )
        project = result.scalar_one_or_none()
        if project is None:
            raise NotFoundError("Project not found")
        return project

    async def _load_loan(self, session: AsyncSession, project_id: str) -> Loan:
        result = await session.execute(select(Loan).where(Loan.project_id == project_id))
        loan = result.scalar_one_or_none()
        if loan is None:
            raise PreconditionError(f"Loan record not found for project {project_id}")
        return loan

    async def _commit(self, session: AsyncSession, project_id: str) -> None:
        try:
            await session.commit()
        except StaleDataError as e:
            await session.rollback()
            raise ConcurrencyError(f"Project {project_id} was updated concurrently; retry the operation") from e

    def _to_amount(self, units: int) -> Decimal:
        return financial.from_units(units, self.config.asset_decimals)

    # ── Commitments ───────────────────────────────────────────

    async def record_commitment(
        self,
        project_id: str,
        investor_address: str,
        amount: financial.Number,
        lockup_period: Union[financial.LockupPeriod, str],
        tx_ref: Optional[str] = None,
    ) -> CommitmentResult:
        """Book an investment: commitment row, funding increase, fee accumulation, active -> funded."""
        if not project_id:
            raise ValidationError("Missing projectId")
        if not is_valid_address(investor_address):
            raise ValidationError(f"Invalid investor address: {investor_address!r}")
        amount = financial.validate_commitment_amount(amount, rate=self.config.platform_fee_rate)
        now = _utcnow()
        expiry = financial.lockup_expiry(lockup_period, now)
        fee, net = financial.split_commitment(amount, self.config.platform_fee_rate)

        async with self.locks.hold(project_id):
            async with self.session_factory() as session:
                project = await self._load_project(session, project_id)
                if tx_ref:
                    existing = (
                        await session.execute(select(Commitment).where(Commitment.tx_ref == tx_ref))
                    ).scalar_one_or_none()
                    if existing is not None:
                        if existing.project_id != project_id:
                            raise ValidationError(f"Transaction {tx_ref} is already booked for another project")
                        return CommitmentResult(
                            commitment=existing,
                            project_status=project.status,
                            current_funding=Decimal(project.current_funding),
                            duplicate=True,
                        )

                newly_funded = lifecycle.apply_commitment(project, fee, net)
                commitment = Commitment(
                    id=f"cmt-{uuid.uuid4().hex[:12]}",
                    project_id=project.id,
                    investor_address=investor_address,
                    amount=financial.quantize_money(amount),
                    platform_fee=fee,
                    net_amount=net,
                    lockup_period=financial.LockupPeriod(lockup_period).value,
                    lockup_expiry=expiry,
                    status=CommitmentStatus.ACTIVE.value,
                    tx_ref=tx_ref,
                    created_at=now,
                )
                session.add(commitment)
                audit.record_event(
                    session,
                    project.id,
                    SettlementAction.COMMITMENT_RECORDED,
                    actor=investor_address,
                    amount=commitment.amount,
                    tx_ref=tx_ref,
                    details={"fee": str(fee), "net": str(net), "fundedNow": newly_funded},
                )
                await self._commit(session, project.id)

        if newly_funded:
            logger.info(f"Project {project_id} reached its goal ({project.current_funding} / {project.goal_amount})")
        return CommitmentResult(
            commitment=commitment,
            project_status=project.status,
            current_funding=Decimal(project.current_funding),
            newly_funded=newly_funded,
        )

    # ── Withdrawal ────────────────────────────────────────────

    async def withdraw(self, project_id: str, requester_address: str) -> WithdrawalResult:
        if not project_id or not requester_address:
            raise ValidationError("Missing projectId or creatorAddress")

        async with self.locks.hold(project_id):
            async with self.session_factory() as session:
                project = await self._load_project(session, project_id)
                if requester_address != project.creator_address:
                    logger.warning(f"Rejected withdrawal for project {project_id} by non-creator {requester_address}")
                    raise UnauthorizedError("Unauthorized: You are not the project creator")

                if project.withdrawal_tx_ref:
                    logger.info(f"Withdrawal for project {project_id} already settled as {project.withdrawal_tx_ref}")
                    return WithdrawalResult(
                        project_id=project.id,
                        tx_ref=project.withdrawal_tx_ref,
                        amount=Decimal(project.withdrawal_amount),
                        status=project.status,
                        already_processed=True,
                        loan=await self._find_loan(session, project.id),
                    )

                lifecycle.ensure_withdrawable(project)

                with self.custody.signing_keypair(project.derivation_path) as keypair:
                    if keypair.address != project.custodial_address:
                        await self._report_custody_mismatch(session, project, keypair.address, requester_address)

                    if project.withdrawal_intent_at is not None:
                        prior = await self._find_prior_payout(project)
                        if prior is not None:
                            return await self._finalize_withdrawal(session, project, prior, requester_address, recovered=True)

                    balance_units = await self._escrow_balance(project)
                    if project.withdrawal_intent_units is not None and balance_units < project.withdrawal_intent_units:
                        raise LedgerError(
                            f"Escrow balance of project {project_id} dropped below the recorded payout but the "
                            f"transfer is not visible in ledger history yet; retry later"
                        )

                    amount = financial.quantize_money_down(self._to_amount(balance_units))
                    if amount <= 0:
                        raise PreconditionError("No funds available for withdrawal")
                    units = financial.to_units(amount, self.config.asset_decimals)

                    project.withdrawal_intent_at = _utcnow()
                    project.withdrawal_intent_units = units
                    audit.record_event(
                        session,
                        project.id,
                        SettlementAction.WITHDRAWAL_SUBMITTED,
                        actor=requester_address,
                        amount=amount,
                        details={"units": units, "assetId": self.config.asset_id},
                    )
                    await self._commit(session, project.id)

                    logger.info(f"Processing {amount} payout for project {project_id} to {requester_address}")
                    receipt = await self._submit_transfer(keypair, requester_address, units)

                return await self._finalize_withdrawal(session, project, receipt, requester_address)

    async def _find_loan(self, session: AsyncSession, project_id: str) -> Optional[Loan]:
        result = await session.execute(select(Loan).where(Loan.project_id == project_id))
        return result.scalar_one_or_none()

    async def _report_custody_mismatch(
        self,
        session: AsyncSession,
        project: Project,
        derived_address: str,
        requester_address: str,
    ) -> None:
        logger.critical(
            f"CUSTODY INTEGRITY FAILURE for project {project.id}: derived {derived_address} "
            f"from {project.derivation_path} but stored escrow is {project.custodial_address}"
        )
        audit.record_event(
            session,
            project.id,
            SettlementAction.CUSTODY_MISMATCH,
            actor=requester_address,
            details={
                "derivedAddress": derived_address,
                "storedAddress": project.custodial_address,
                "derivationPath": project.derivation_path,
            },
        )
        await self._commit(session, project.id)
        raise CustodyIntegrityError(
            f"Derived escrow address does not match the stored address for project {project.id}; "
            f"refusing to sign"
        )

    async def _escrow_balance(self, project: Project) -> int:
        try:
            return await self.ledger.balance_of(project.custodial_address, self.config.asset_id)
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"Balance query for project {project.id} failed: {e}") from e

    async def _find_prior_payout(self, project: Project) -> Optional[TransferReceipt]:
        try:
            history = await self.ledger.transfers_from(project.custodial_address, self.config.asset_id)
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"Transfer history query for project {project.id} failed: {e}") from e
        for receipt in history:
            if receipt.to_address != project.creator_address or receipt.amount_units != project.withdrawal_intent_units:
                continue
            if receipt.status == TransferStatus.FINALIZED:
                logger.warning(f"Recovered payout {receipt.tx_ref} for project {project.id} from ledger history")
                return receipt
            if receipt.status != TransferStatus.FAILED:
                raise LedgerError(
                    f"Payout {receipt.tx_ref} for project {project.id} is still {receipt.status.value}; retry later"
                )
        return None

    async def _submit_transfer(self, keypair: CustodialKeypair, to_address: str, units: int) -> TransferReceipt:
        timeout = self.config.finality_timeout_seconds
        try:
            receipt = await asyncio.wait_for(
                self.ledger.transfer(keypair, to_address, units, self.config.asset_id),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise FinalityTimeoutError(
                f"Transfer to {to_address} was not finalized within {timeout:g}s; safe to retry"
            ) from e
        except LedgerError:
            raise
        except Exception as e:
            # the outcome is unknown; a retry recovers it from ledger history
            raise LedgerError(f"Transfer to {to_address} failed: {e}") from e
        if receipt.status != TransferStatus.FINALIZED:
            raise LedgerError(f"Transfer {receipt.tx_ref} ended as {receipt.status.value}, not finalized")
        return receipt

    async def _finalize_withdrawal(
        self,
        session: AsyncSession,
        project: Project,
        receipt: TransferReceipt,
        requester_address: str,
        recovered: bool = False,
    ) -> WithdrawalResult:
        amount = financial.quantize_money(self._to_amount(receipt.amount_units))
        loan = lifecycle.complete_withdrawal(
            project,
            amount,
            receipt.tx_ref,
            _utcnow(),
            self.lending_model,
            self.config.loan_term_days,
        )
        if loan is not None:
            session.add(loan)
        audit.record_event(
            session,
            project.id,
            SettlementAction.WITHDRAWAL_RECOVERED if recovered else SettlementAction.WITHDRAWAL_COMPLETED,
            actor=requester_address,
            amount=amount,
            tx_ref=receipt.tx_ref,
            details={
                "status": project.status,
                "totalRepayment": str(loan.total_repayment) if loan is not None else None,
            },
        )
        await self._commit(session, project.id)
        logger.info(f"Withdrawal for project {project.id} settled: {amount} sent in {receipt.tx_ref}")
        return WithdrawalResult(
            project_id=project.id,
            tx_ref=receipt.tx_ref,
            amount=amount,
            status=project.status,
            loan=loan,
        )

    # ── Repayment ─────────────────────────────────────────────

    async def check_repayment(
        self,
        project_id: str,
        checker_source: Union[CheckerSource, str] = CheckerSource.MANUAL,
    ) -> RepaymentResult:
        if not project_id:
            raise ValidationError("Missing projectId")
        source = audit.parse_checker_source(checker_source)

        async with self.locks.hold(project_id):
            async with self.session_factory() as session:
                project = await self._load_project(session, project_id)
                if project.status == ProjectStatus.REPAID.value:
                    loan = await self._load_loan(session, project.id)
                    return self._repaid_result(project, loan, already_repaid=True)

                lifecycle.ensure_checkable(project)
                loan = await self._load_loan(session, project.id)
                if loan.status != LoanStatus.ACTIVE.value:
                    raise PreconditionError(f"Loan {loan.id} is '{loan.status}', not active")
                expected = Decimal(loan.total_repayment)
                now = _utcnow()

                try:
                    balance_units = await self.ledger.balance_of(project.custodial_address, self.config.asset_id)
                except Exception as e:
                    audit.record_repayment_check(
                        session,
                        project.id,
                        None,
                        expected,
                        source,
                        notes=f"Balance query failed: {e}",
                        checked_at=now,
                    )
                    project.last_repayment_check_at = now
                    await self._commit(session, project.id)
                    logger.warning(f"Balance query for project {project_id} failed: {e}")
                    if isinstance(e, LedgerError):
                        raise
                    raise LedgerError(f"Balance query failed: {e}") from e

                balance = self._to_amount(balance_units)
                audit.record_repayment_check(
                    session,
                    project.id,
                    balance,
                    expected,
                    source,
                    notes=f"Balance: {balance}, Expected: {expected}",
                    checked_at=now,
                )
                project.last_repayment_check_at = now

                if balance >= expected:
                    lifecycle.close_loan(project, loan, balance, now)
                    audit.record_event(
                        session,
                        project.id,
                        SettlementAction.REPAYMENT_CONFIRMED,
                        actor=source.value,
                        amount=loan.actual_repayment_amount,
                        details={"expected": str(expected), "observed": str(balance)},
                    )
                    await self._commit(session, project.id)
                    logger.info(f"Full repayment detected for project {project_id}: {balance} >= {expected}")
                    return self._repaid_result(project, loan)

                await self._commit(session, project.id)

        remaining = expected - balance
        logger.info(f"Project {project_id} waiting for repayment, {remaining} remaining")
        return RepaymentResult(
            project_id=project_id,
            repaid=False,
            expected_amount=expected,
            current_balance=balance,
            remaining=remaining,
            percentage_repaid=financial.repayment_percentage(balance, expected),
            message=f"Waiting for full repayment. {financial.quantize_money(remaining)} remaining.",
            loan=loan,
        )

    @staticmethod
    def _repaid_result(project: Project, loan: Loan, already_repaid: bool = False) -> RepaymentResult:
        expected = Decimal(loan.total_repayment)
        received = Decimal(loan.actual_repayment_amount)
        return RepaymentResult(
            project_id=project.id,
            repaid=True,
            expected_amount=expected,
            current_balance=received,
            remaining=Decimal("0.00"),
            percentage_repaid=financial.repayment_percentage(received, expected),
            overpayment=max(Decimal("0.00"), received - expected),
            already_repaid=already_repaid,
            message="Repayment confirmed! Project marked as fully repaid.",
            loan=loan,
        )

    # ── Batch ─────────────────────────────────────────────────

    async def pending_projects(self) -> list[tuple[str, str]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Project.id, Project.title)
                .where(Project.status == ProjectStatus.BORROWING.value)
                .order_by(Project.created_at)
            )
            return [(row.id, row.title) for row in result.all()]

    async def check_all_pending(
        self,
        checker_source: Union[CheckerSource, str] = CheckerSource.AUTOMATED,
    ) -> BatchCheckSummary:
        source = audit.parse_checker_source(checker_source)
        pending = await self.pending_projects()
        summary = BatchCheckSummary(checked_at=_utcnow())
        if not pending:
            logger.info("No projects awaiting repayment")
            return summary

        logger.info(f"Checking {len(pending)} projects for repayment...")
        semaphore = asyncio.Semaphore(max(1, self.config.check_workers))

        async def run_one(project_id: str, title: str) -> BatchCheckItem:
            async with semaphore:
                try:
                    result = await self.check_repayment(project_id, source)
                except SettlementError as e:
                    logger.warning(f"Error checking project {project_id}: {e.message}")
                    return BatchCheckItem(project_id=project_id, title=title, error=e.to_dict())
                except Exception as e:
                    logger.exception(f"Unexpected error checking project {project_id}")
                    return BatchCheckItem(
                        project_id=project_id,
                        title=title,
                        error={"error": "internal", "message": str(e)},
                    )
                return BatchCheckItem(project_id=project_id, title=title, result=result)

        tasks: list[asyncio.Task] = []
        try:
            for index, (project_id, title) in enumerate(pending):
                if index and self.config.check_delay_seconds > 0:
                    await asyncio.sleep(self.config.check_delay_seconds)
                tasks.append(asyncio.create_task(run_one(project_id, title)))
            items: list[BatchCheckItem] = list(await asyncio.gather(*tasks))
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Repayment check cancelled after launching {len(tasks)} of {len(pending)} checks")
            raise

        summary.total_checked = len(items)
        summary.results = items
        for item in items:
            if item.result is None:
                summary.failed += 1
            elif item.result.repaid:
                if not item.result.already_repaid:
                    summary.newly_repaid += 1
            else:
                summary.still_pending += 1

        logger.info(
            f"Repayment check summary: checked={summary.total_checked} newly_repaid={summary.newly_repaid} "
            f"still_pending={summary.still_pending} failed={summary.failed}"
        )
        return summary

