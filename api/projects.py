from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_custody, get_reconciler
from database import get_db
from models import Commitment, Project
from schemas.project import CommitmentCreate, ProjectCreate
from services import financial, projects
from services.custody import KeyCustody
from services.lifecycle import CommitmentStatus
from services.reconciler import SettlementReconciler
from utils.case import money

router = APIRouter(prefix="/api/projects", tags=["projects"])


def _project_to_response(p: Project) -> dict[str, Any]:
    """Serialize project for the frontend. The escrow secret column is never exposed."""
    return {
        "id": p.id,
        "title": p.title,
        "description": p.description,
        "creatorAddress": p.creator_address,
        "goalAmount": money(p.goal_amount),
        "currentFunding": money(p.current_funding),
        "fundingPercentage": money(financial.funding_percentage(p.current_funding, p.goal_amount)),
        "interestRate": money(p.interest_rate),
        "status": p.status,
        "custodialAddress": p.custodial_address,
        "platformFeePaid": money(p.platform_fee_paid),
        "withdrawalTxRef": p.withdrawal_tx_ref,
        "withdrawalAmount": money(p.withdrawal_amount),
        "withdrawnAt": p.withdrawn_at.isoformat() if p.withdrawn_at else None,
        "lastRepaymentCheckAt": p.last_repayment_check_at.isoformat() if p.last_repayment_check_at else None,
        "repaidAt": p.repaid_at.isoformat() if p.repaid_at else None,
        "repaymentAmount": money(p.repayment_amount),
        "createdAt": p.created_at.isoformat() if p.created_at else None,
        "updatedAt": p.updated_at.isoformat() if p.updated_at else None,
    }


def _commitment_to_response(c: Commitment, now: Optional[datetime] = None) -> dict[str, Any]:
    """Lockup state is derived from the expiry at read time."""
    now = now or datetime.now(timezone.utc)
    locked = financial.is_lockup_active(c.lockup_expiry, now)
    return {
        "id": c.id,
        "projectId": c.project_id,
        "investorAddress": c.investor_address,
        "amount": money(c.amount),
        "platformFee": money(c.platform_fee),
        "netAmount": money(c.net_amount),
        "lockupPeriod": c.lockup_period,
        "lockupExpiry": c.lockup_expiry.isoformat() if c.lockup_expiry else None,
        "lockupActive": locked,
        "lockupRemainingSeconds": int(financial.remaining_lockup(c.lockup_expiry, now).total_seconds()) if locked else 0,
        "status": CommitmentStatus.LOCKED.value if locked else c.status,
        "txRef": c.tx_ref,
        "createdAt": c.created_at.isoformat() if c.created_at else None,
    }


@router.get("")
async def list_projects(status: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    return {"projects": [_project_to_response(p) for p in await projects.list_projects(db, status)]}


@router.post("", status_code=201)
async def create_project(
    body: ProjectCreate,
    db: AsyncSession = Depends(get_db),
    custody: KeyCustody = Depends(get_custody),
):
    project = await projects.create_project(
        db,
        custody,
        title=body.title,
        description=body.description,
        goal_amount=body.goal_amount,
        interest_rate=body.interest_rate,
        creator_address=body.creator_address,
    )
    return {"success": True, "project": _project_to_response(project)}


@router.get("/{project_id}")
async def get_project(project_id: str, db: AsyncSession = Depends(get_db)):
    return _project_to_response(await projects.get_project(db, project_id))


@router.post("/{project_id}/commitments", status_code=201)
async def create_commitment(
    project_id: str,
    body: CommitmentCreate,
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    result = await reconciler.record_commitment(
        project_id,
        investor_address=body.investor_address,
        amount=body.amount,
        lockup_period=body.lockup_period,
        tx_ref=body.tx_ref,
    )
    return {
        "success": True,
        "duplicate": result.duplicate,
        "commitment": _commitment_to_response(result.commitment),
        "projectStatus": result.project_status,
        "currentFunding": money(result.current_funding),
        "newlyFunded": result.newly_funded,
    }


@router.get("/{project_id}/commitments")
async def list_commitments(
    project_id: str,
    investor_address: Optional[str] = Query(None, alias="investorAddress"),
    db: AsyncSession = Depends(get_db),
):
    await projects.get_project(db, project_id)
    commitments = await projects.list_commitments(db, project_id, investor_address)
    return [_commitment_to_response(c) for c in commitments]
