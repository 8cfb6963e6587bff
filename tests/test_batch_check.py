"""
Batch repayment checks, the background poller and per-project locks.
Run from project dir: python -m pytest tests/test_batch_check.py -v
"""
import asyncio
import unittest
from decimal import Decimal

from config import Settings
from services.locks import ProjectLocks
from services.poller import RepaymentPoller
from services.reconciler import BatchCheckSummary, ReconcilerConfig, SettlementReconciler
from support import CREATOR, InMemoryLedger, create_funded_project, create_project, make_custody, make_database


class TestCheckAllPending(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine, self.session_factory = await make_database()
        self.custody = make_custody()
        self.ledger = InMemoryLedger()
        self.reconciler = SettlementReconciler(
            self.session_factory,
            self.custody,
            self.ledger,
            # SQLite allows a single writer
            ReconcilerConfig(check_delay_seconds=0, check_workers=1),
        )

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def _borrowing(self, title):
        project = await create_funded_project(self.session_factory, self.custody, self.ledger, title=title)
        await self.reconciler.withdraw(project.id, CREATOR)
        return project

    async def test_nothing_pending(self):
        await create_project(self.session_factory, self.custody)
        summary = await self.reconciler.check_all_pending()
        self.assertEqual(summary.total_checked, 0)
        self.assertEqual(summary.results, [])

    async def test_failures_are_isolated(self):
        repaid = await self._borrowing("Repaid")
        pending = await self._borrowing("Pending")
        broken = await self._borrowing("Broken")
        self.ledger.set_balance(repaid.custodial_address, "110")
        self.ledger.set_balance(pending.custodial_address, "40")
        self.ledger.failing_addresses.add(broken.custodial_address)

        summary = await self.reconciler.check_all_pending()
        self.assertEqual(summary.total_checked, 3)
        self.assertEqual(summary.newly_repaid, 1)
        self.assertEqual(summary.still_pending, 1)
        self.assertEqual(summary.failed, 1)

        by_id = {item.project_id: item for item in summary.results}
        self.assertTrue(by_id[repaid.id].result.repaid)
        self.assertEqual(by_id[pending.id].result.remaining, Decimal("70"))
        self.assertEqual(by_id[broken.id].error["error"], "ledger")
        self.assertEqual(by_id[broken.id].title, "Broken")

        # Repaid projects leave the pending set
        again = await self.reconciler.check_all_pending()
        self.assertEqual(again.total_checked, 2)
        self.assertEqual(again.newly_repaid, 0)

    async def test_delay_between_launches(self):
        reconciler = SettlementReconciler(
            self.session_factory,
            self.custody,
            self.ledger,
            ReconcilerConfig(check_delay_seconds=0.05, check_workers=1),
        )
        for title in ("A", "B", "C"):
            await self._borrowing(title)
        loop = asyncio.get_running_loop()
        started = loop.time()
        summary = await reconciler.check_all_pending()
        self.assertEqual(summary.still_pending, 3)
        self.assertGreaterEqual(loop.time() - started, 0.09)

    async def test_cancellation_stops_launched_checks(self):
        reconciler = SettlementReconciler(
            self.session_factory,
            self.custody,
            self.ledger,
            ReconcilerConfig(check_delay_seconds=5, check_workers=1),
        )
        for title in ("A", "B"):
            await self._borrowing(title)
        self.ledger.balance_calls = 0
        self.ledger.balance_delay = 5

        before = asyncio.all_tasks()
        batch = asyncio.create_task(reconciler.check_all_pending())
        await asyncio.sleep(0.1)
        self.assertEqual(self.ledger.balance_calls, 1)
        batch.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await batch

        self.assertEqual(asyncio.all_tasks() - before, set())
        self.assertEqual(self.ledger.balance_calls, 1)


class TestBatchWorkerSettings(unittest.TestCase):
    def test_sqlite_runs_a_single_worker(self):
        config = Settings(database_url="sqlite+aiosqlite:///./x.db", repayment_check_workers=4).reconciler_config()
        self.assertEqual(config.check_workers, 1)

    def test_other_databases_use_configured_workers(self):
        config = Settings(
            database_url="postgresql+asyncpg://app@db/settlement",
            repayment_check_workers=4,
        ).reconciler_config()
        self.assertEqual(config.check_workers, 4)


class _CountingReconciler:
    def __init__(self, fail_first=False):
        self.calls = 0
        self.fail_first = fail_first

    async def check_all_pending(self, checker_source):
        self.calls += 1
        if self.fail_first and self.calls == 1:
            raise RuntimeError("database unavailable")
        return BatchCheckSummary(checked_at=None)


class TestRepaymentPoller(unittest.IsolatedAsyncioTestCase):
    async def test_polls_until_stopped(self):
        reconciler = _CountingReconciler()
        poller = RepaymentPoller(reconciler, 0.01)
        poller.start()
        self.assertTrue(poller.running)
        await asyncio.sleep(0.1)
        await poller.stop()
        self.assertFalse(poller.running)
        calls = reconciler.calls
        self.assertGreater(calls, 1)
        await asyncio.sleep(0.05)
        self.assertEqual(reconciler.calls, calls)

    async def test_failed_cycle_does_not_stop_polling(self):
        reconciler = _CountingReconciler(fail_first=True)
        poller = RepaymentPoller(reconciler, 0.01)
        poller.start()
        await asyncio.sleep(0.1)
        await poller.stop()
        self.assertGreater(reconciler.calls, 1)


class TestProjectLocks(unittest.IsolatedAsyncioTestCase):
    async def test_same_project_is_serialized(self):
        locks = ProjectLocks()
        order = []

        async def worker(name):
            async with locks.hold("p-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        self.assertEqual(order, ["a-in", "a-out", "b-in", "b-out"])
        self.assertEqual(len(locks), 0)

    async def test_different_projects_do_not_block(self):
        locks = ProjectLocks()
        async with locks.hold("p-1"):
            self.assertTrue(locks.is_locked("p-1"))
            self.assertFalse(locks.is_locked("p-2"))
            async with locks.hold("p-2"):
                self.assertTrue(locks.is_locked("p-2"))
        self.assertFalse(locks.is_locked("p-1"))


if __name__ == "__main__":
    unittest.main()
