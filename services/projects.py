from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Commitment, Loan, Project
from services import audit, financial
from services.audit import SettlementAction
from services.custody import KeyCustody, is_valid_address, project_derivation_path
from services.errors import NotFoundError, ValidationError
from services.lifecycle import ProjectStatus


async def create_project(
    session: AsyncSession,
    custody: KeyCustody,
    title: str,
    description: Optional[str],
    goal_amount: financial.Number,
    interest_rate: financial.Number,
    creator_address: str,
) -> Project:
    """
    Create an active project with its own escrow address derived from the master secret.
    Only the derivation path is stored alongside the address.
    """
    if not title or not title.strip():
        raise ValidationError("Missing required fields: title")
    if not is_valid_address(creator_address):
        raise ValidationError(f"Invalid creator address: {creator_address!r}")
    goal = financial.quantize_money(financial.validate_goal_amount(goal_amount))
    rate = financial.validate_interest_rate(interest_rate)

    now = datetime.now(timezone.utc)
    project_id = str(uuid.uuid4())
    path = project_derivation_path(project_id)
    address = custody.address_for(path)

    project = Project(
        id=project_id,
        title=title.strip(),
        description=description,
        creator_address=creator_address,
        goal_amount=goal,
        current_funding=Decimal("0.00"),
        interest_rate=rate,
        status=ProjectStatus.ACTIVE.value,
        custodial_address=address,
        derivation_path=path,
        custodial_secret_encrypted=None,
        platform_fee_paid=Decimal("0.00"),
        created_at=now,
        updated_at=now,
    )
    session.add(project)
    audit.record_event(
        session,
        project_id,
        SettlementAction.PROJECT_CREATED,
        actor=creator_address,
        details={"custodialAddress": address, "derivationPath": path},
    )
    await session.flush()
    return project


async def get_project(session: AsyncSession, project_id: str) -> Project:
    result = await session.execute(select(Project).where(Project.id == project_id))
    project = result.scalar_one_or_none()
    if project is None:
        raise NotFoundError("Project not found")
    return project


async def list_projects(session: AsyncSession, status: Optional[str] = None) -> list[Project]:
    stmt = select(Project).order_by(Project.created_at.desc())
    if status:
        stmt = stmt.where(Project.status == status)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_commitments(
    session: AsyncSession,
    project_id: str,
    investor_address: Optional[str] = None,
) -> list[Commitment]:
    stmt = select(Commitment).where(Commitment.project_id == project_id).order_by(Commitment.created_at.desc())
    if investor_address:
        stmt = stmt.where(Commitment.investor_address == investor_address)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def repayment_status(session: AsyncSession, project_id: str) -> dict[str, Any]:
    """Cached repayment view from the database only; no ledger query."""
    project = await get_project(session, project_id)
    loan = (await session.execute(select(Loan).where(Loan.project_id == project_id))).scalar_one_or_none()
    checks = await audit.recent_checks(session, project_id, limit=5)
    return {"project": project, "loan": loan, "recent_checks": checks}
