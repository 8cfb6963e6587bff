import hmac
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_checker_api_key, get_reconciler
from api.errors import error_response
from database import get_db
from models import Loan, RepaymentCheck
from schemas.settlement import CheckRepaymentRequest, WithdrawRequest
from services import projects
from services.audit import CheckerSource
from services.errors import ValidationError
from services.reconciler import BatchCheckItem, RepaymentResult, SettlementReconciler
from utils.case import dict_keys_to_camel, money

router = APIRouter(prefix="/api", tags=["settlement"])


def _loan_details(loan: Optional[Loan]) -> Optional[dict[str, Any]]:
    if loan is None:
        return None
    return {
        "loanId": loan.id,
        "capital": money(loan.principal),
        "interest": money(loan.interest_amount),
        "interestRate": money(loan.interest_rate),
        "totalRepayment": money(loan.total_repayment),
        "dueDate": loan.due_date.isoformat() if loan.due_date else None,
        "status": loan.status,
    }


def _repayment_to_response(result: RepaymentResult) -> dict[str, Any]:
    body = dict_keys_to_camel({
        "project_id": result.project_id,
        "repaid": result.repaid,
        "already_repaid": result.already_repaid,
        "expected_amount": result.expected_amount,
        "current_balance": result.current_balance,
        "remaining": result.remaining,
        "percentage_repaid": result.percentage_repaid,
        "overpayment": result.overpayment,
        "message": result.message,
    })
    body["loanDetails"] = _loan_details(result.loan)
    return body


def _check_to_response(check: RepaymentCheck) -> dict[str, Any]:
    return dict_keys_to_camel({
        "id": check.id,
        "observed_balance": check.observed_balance,
        "expected_amount": check.expected_amount,
        "is_fully_repaid": check.is_fully_repaid,
        "checker_source": check.checker_source,
        "notes": check.notes,
        "checked_at": check.checked_at,
    })


def _batch_item_to_response(item: BatchCheckItem) -> dict[str, Any]:
    entry: dict[str, Any] = {"projectId": item.project_id, "title": item.title}
    if item.result is not None:
        entry.update(_repayment_to_response(item.result))
    else:
        entry["error"] = item.error
    return entry


@router.post("/withdraw")
async def withdraw(body: WithdrawRequest, reconciler: SettlementReconciler = Depends(get_reconciler)):
    if not body.project_id or not body.creator_address:
        raise ValidationError("Missing projectId or creatorAddress")
    result = await reconciler.withdraw(body.project_id, body.creator_address)
    return {
        "success": True,
        "projectId": result.project_id,
        "txRef": result.tx_ref,
        "amount": money(result.amount),
        "status": result.status,
        "alreadyProcessed": result.already_processed,
        "loanDetails": _loan_details(result.loan),
    }


@router.post("/repay")
async def check_repayment(body: CheckRepaymentRequest, reconciler: SettlementReconciler = Depends(get_reconciler)):
    if not body.project_id:
        raise ValidationError("Missing projectId")
    result = await reconciler.check_repayment(body.project_id, body.source)
    return {"success": True, **_repayment_to_response(result)}


@router.get("/repay")
async def repayment_status(
    project_id: str = Query("", alias="projectId"),
    db: AsyncSession = Depends(get_db),
):
    """Cached repayment status from the database; does not query the ledger."""
    if not project_id:
        raise ValidationError("Missing projectId")
    status = await projects.repayment_status(db, project_id)
    project = status["project"]
    return {
        "projectId": project.id,
        "status": project.status,
        "custodialAddress": project.custodial_address,
        "lastCheckedAt": project.last_repayment_check_at.isoformat() if project.last_repayment_check_at else None,
        "repaidAt": project.repaid_at.isoformat() if project.repaid_at else None,
        "repaymentAmount": money(project.repayment_amount),
        "loanDetails": _loan_details(status["loan"]),
        "recentChecks": [_check_to_response(c) for c in status["recent_checks"]],
    }


@router.get("/repay/check-all")
async def check_all_pending(
    api_key: str = Query("", alias="apiKey"),
    expected_key: str = Depends(get_checker_api_key),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    """Batch repayment check for schedulers. Gated by the shared checker key; an unset key rejects everything."""
    if not expected_key or not hmac.compare_digest(api_key.encode(), expected_key.encode()):
        return error_response(401, "unauthorized", "Unauthorized")
    summary = await reconciler.check_all_pending(CheckerSource.API)
    return {
        "success": True,
        "message": f"Checked {summary.total_checked} projects",
        "checkedAt": summary.checked_at.isoformat(),
        "totalChecked": summary.total_checked,
        "newlyRepaid": summary.newly_repaid,
        "stillPending": summary.still_pending,
        "failed": summary.failed,
        "results": [_batch_item_to_response(item) for item in summary.results],
    }
