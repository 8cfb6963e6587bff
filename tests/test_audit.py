"""
Append-only audit records and log redaction.
Run from project dir: python -m pytest tests/test_audit.py -v
"""
import logging
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from logging_config import SecretMaskingFilter
from models import RepaymentCheck
from services import audit
from services.audit import CheckerSource, SettlementAction
from services.errors import ValidationError
from support import create_project, make_custody, make_database


class TestAuditTrail(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine, self.session_factory = await make_database()
        self.project = await create_project(self.session_factory, make_custody())

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def test_recent_checks_newest_first(self):
        async with self.session_factory() as session:
            start = datetime(2026, 5, 1, tzinfo=timezone.utc)
            for i, balance in enumerate(("10", "20", "30", "40", "50", "60")):
                audit.record_repayment_check(
                    session,
                    self.project.id,
                    Decimal(balance),
                    Decimal("55"),
                    CheckerSource.MANUAL,
                    notes=balance,
                    checked_at=start + timedelta(minutes=i),
                )
            await session.commit()
        async with self.session_factory() as session:
            checks = await audit.recent_checks(session, self.project.id)
        self.assertEqual([c.notes for c in checks], ["60", "50", "40", "30", "20"])
        self.assertEqual([c.is_fully_repaid for c in checks], [True, False, False, False, False])

    async def test_checks_are_append_only(self):
        async with self.session_factory() as session:
            check = audit.record_repayment_check(
                session, self.project.id, None, Decimal("110"), CheckerSource.API, notes="Balance query failed"
            )
            await session.commit()
            check.notes = "rewritten"
            with self.assertRaises(ValueError):
                await session.commit()
            await session.rollback()
        async with self.session_factory() as session:
            stored = await session.get(RepaymentCheck, check.id)
            with self.assertRaises(ValueError):
                await session.delete(stored)
                await session.flush()

    async def test_events(self):
        async with self.session_factory() as session:
            audit.record_event(
                session,
                self.project.id,
                SettlementAction.COMMITMENT_RECORDED,
                actor="investor",
                amount=Decimal("10.00"),
                details={"fee": "0.20"},
            )
            await session.commit()
        async with self.session_factory() as session:
            events = await audit.events_for(session, self.project.id)
        self.assertEqual([e.action for e in events], ["project_created", "commitment_recorded"])
        self.assertEqual(events[1].details, {"fee": "0.20"})

    def test_checker_source_parsing(self):
        self.assertEqual(audit.parse_checker_source("automated"), CheckerSource.AUTOMATED)
        with self.assertRaises(ValidationError):
            audit.parse_checker_source("cron")


class TestSecretMaskingFilter(unittest.TestCase):
    def _record(self, msg, *args):
        return logging.LogRecord("bochica.test", logging.INFO, __file__, 1, msg, args, None)

    def test_hex_seeds_are_redacted(self):
        seed = "ab" * 32
        record = self._record(f"seed 0x{seed} loaded")
        SecretMaskingFilter().filter(record)
        self.assertEqual(record.getMessage(), "seed [REDACTED] loaded")

        record = self._record("seed %s loaded", seed)
        SecretMaskingFilter().filter(record)
        self.assertNotIn(seed, record.getMessage())

    def test_tx_refs_longer_than_a_seed_are_untouched(self):
        record = self._record("tx " + "c" * 66)
        SecretMaskingFilter().filter(record)
        self.assertIn("c" * 66, record.getMessage())


if __name__ == "__main__":
    unittest.main()
