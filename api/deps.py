from fastapi import Request

from config import settings
from services.custody import KeyCustody
from services.reconciler import SettlementReconciler


def get_reconciler(request: Request) -> SettlementReconciler:
    return request.app.state.reconciler


def get_custody(request: Request) -> KeyCustody:
    return request.app.state.custody


def get_checker_api_key() -> str:
    return settings.repayment_checker_api_key
