"""Background task running the batch repayment check on a fixed interval."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from services.audit import CheckerSource
from services.reconciler import BatchCheckSummary, SettlementReconciler

logger = logging.getLogger("bochica.poller")


class RepaymentPoller:
    def __init__(self, reconciler: SettlementReconciler, interval_seconds: float):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="repayment-poller")
        logger.info(f"Repayment poller started (every {self.interval_seconds:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Repayment poller stopped")

    async def run_once(self) -> BatchCheckSummary:
        return await self.reconciler.check_all_pending(CheckerSource.AUTOMATED)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                # A failed cycle must not stop future polling
                logger.exception("Repayment poll cycle failed")
