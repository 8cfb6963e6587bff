"""
Run one batch repayment check over every borrowing project, the same pass the scheduler endpoint runs.
Run: python -m scripts.check_repayments (from project dir, with the ledger gateway reachable).
"""
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings
from database import AsyncSessionLocal, init_db
from logging_config import configure_logging
from services.audit import CheckerSource
from services.custody import KeyCustody
from services.ledger import GatewayLedgerClient
from services.reconciler import SettlementReconciler


async def check_all() -> int:
    configure_logging(settings.log_level)
    await init_db()
    ledger = GatewayLedgerClient(
        settings.ledger_gateway_url,
        request_timeout=settings.ledger_request_timeout_seconds,
        poll_interval=settings.finality_poll_interval_seconds,
    )
    reconciler = SettlementReconciler(
        AsyncSessionLocal,
        KeyCustody(settings.custody_config()),
        ledger,
        settings.reconciler_config(),
    )
    try:
        summary = await reconciler.check_all_pending(CheckerSource.AUTOMATED)
    finally:
        await ledger.close()

    for item in summary.results:
        if item.result is None:
            print(f"  {item.project_id} ({item.title}): error {item.error['message']}")
        elif item.result.repaid:
            print(f"  {item.project_id} ({item.title}): repaid {item.result.current_balance}")
        else:
            print(f"  {item.project_id} ({item.title}): {item.result.remaining} remaining")
    print(
        f"Checked {summary.total_checked}: {summary.newly_repaid} newly repaid, "
        f"{summary.still_pending} pending, {summary.failed} failed."
    )
    return 1 if summary.failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(check_all()))
