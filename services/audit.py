"""
Append-only audit trail: one RepaymentCheck per balance poll, one SettlementEvent per settlement action.
Records are added to the caller's session so they commit (or roll back) with the transition they describe.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import RepaymentCheck, SettlementEvent
from services.errors import ValidationError


class CheckerSource(str, Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"
    API = "api"


class SettlementAction(str, Enum):
    PROJECT_CREATED = "project_created"
    COMMITMENT_RECORDED = "commitment_recorded"
    WITHDRAWAL_SUBMITTED = "withdrawal_submitted"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_RECOVERED = "withdrawal_recovered"
    CUSTODY_MISMATCH = "custody_mismatch"
    REPAYMENT_CONFIRMED = "repayment_confirmed"


def parse_checker_source(value: str) -> CheckerSource:
    try:
        return CheckerSource(value)
    except ValueError as e:
        allowed = ", ".join(s.value for s in CheckerSource)
        raise ValidationError(f"Invalid checker source {value!r}; expected one of: {allowed}") from e


def record_repayment_check(
    session: AsyncSession,
    project_id: str,
    observed_balance: Optional[Decimal],
    expected_amount: Decimal,
    source: CheckerSource,
    notes: str,
    checked_at: Optional[datetime] = None,
) -> RepaymentCheck:
    check = RepaymentCheck(
        id=f"chk-{uuid.uuid4().hex[:12]}",
        project_id=project_id,
        observed_balance=observed_balance,
        expected_amount=expected_amount,
        is_fully_repaid=observed_balance is not None and observed_balance >= expected_amount,
        checker_source=source.value,
        notes=notes,
        checked_at=checked_at or datetime.now(timezone.utc),
    )
    session.add(check)
    return check


def record_event(
    session: AsyncSession,
    project_id: str,
    action: SettlementAction,
    actor: str,
    amount: Optional[Decimal] = None,
    tx_ref: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> SettlementEvent:
    entry = SettlementEvent(
        id=f"evt-{uuid.uuid4().hex[:12]}",
        project_id=project_id,
        action=action.value,
        actor=actor,
        amount=amount,
        tx_ref=tx_ref,
        details=details,
        created_at=datetime.now(timezone.utc),
    )
    session.add(entry)
    return entry


async def recent_checks(session: AsyncSession, project_id: str, limit: int = 5) -> list[RepaymentCheck]:
    result = await session.execute(
        select(RepaymentCheck)
        .where(RepaymentCheck.project_id == project_id)
        .order_by(RepaymentCheck.checked_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def events_for(session: AsyncSession, project_id: str) -> list[SettlementEvent]:
    result = await session.execute(
        select(SettlementEvent)
        .where(SettlementEvent.project_id == project_id)
        .order_by(SettlementEvent.created_at.asc())
    )
    return list(result.scalars().all())
