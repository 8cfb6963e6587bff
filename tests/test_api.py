"""
HTTP API: project/commitment endpoints and the settlement endpoints over a throwaway database.
Run from project dir: python -m pytest tests/test_api.py -v
"""
import asyncio
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from api.deps import get_checker_api_key
from api.projects import _commitment_to_response
from database import get_db, init_db, make_session_factory
from main import app
from models import Commitment
from services.custody import CustodyConfig, KeyCustody, encrypt_secret
from services.reconciler import ReconcilerConfig, SettlementReconciler
from support import (
    CREATOR,
    INVESTOR,
    MASTER_SEED,
    STRANGER,
    TEST_KEY,
    InMemoryLedger,
    make_custody,
    temp_database_url,
)

API_KEY = "scheduler-secret"


class TestSettlementApi(unittest.TestCase):
    def setUp(self):
        self.engine = create_async_engine(temp_database_url(), poolclass=NullPool)
        asyncio.run(init_db(self.engine))
        self.session_factory = make_session_factory(self.engine)
        self.custody = make_custody()
        self.ledger = InMemoryLedger()

        async def override_get_db():
            async with self.session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_checker_api_key] = lambda: API_KEY
        app.state.custody = self.custody
        app.state.reconciler = SettlementReconciler(
            self.session_factory,
            self.custody,
            self.ledger,
            ReconcilerConfig(check_delay_seconds=0, check_workers=1),
        )
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        asyncio.run(self.engine.dispose())

    def _create_project(self, goal="100", rate="10"):
        res = self.client.post(
            "/api/projects",
            json={
                "title": "Solar farm",
                "description": "Community solar installation",
                "goalAmount": goal,
                "interestRate": rate,
                "creatorAddress": CREATOR,
            },
        )
        self.assertEqual(res.status_code, 201, res.text)
        return res.json()["project"]

    def _funded_project(self):
        project = self._create_project()
        res = self.client.post(
            f"/api/projects/{project['id']}/commitments",
            json={"investorAddress": INVESTOR, "amount": "102.05", "lockupPeriod": "24h", "txRef": "0xfund"},
        )
        self.assertEqual(res.status_code, 201, res.text)
        self.assertTrue(res.json()["newlyFunded"])
        self.ledger.set_balance(project["custodialAddress"], "100")
        return project

    def _borrowing_project(self):
        project = self._funded_project()
        res = self.client.post("/api/withdraw", json={"projectId": project["id"], "creatorAddress": CREATOR})
        self.assertEqual(res.status_code, 200, res.text)
        return project, res.json()

    def test_health(self):
        res = self.client.get("/health")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["status"], "ok")

    def test_create_and_fetch_project(self):
        project = self._create_project()
        self.assertEqual(project["status"], "active")
        self.assertEqual(project["goalAmount"], "100.00")
        self.assertEqual(project["fundingPercentage"], "0.00")
        self.assertEqual(project["custodialAddress"], self.custody.address_for(f"//1//{project['id']}"))
        self.assertNotIn("custodialSecretEncrypted", project)

        res = self.client.get(f"/api/projects/{project['id']}")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["custodialAddress"], project["custodialAddress"])
        listed = self.client.get("/api/projects", params={"status": "active"}).json()["projects"]
        self.assertEqual([p["id"] for p in listed], [project["id"]])

    def test_invalid_requests(self):
        res = self.client.post(
            "/api/projects",
            json={"title": "X", "goalAmount": "100", "creatorAddress": "nope"},
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["error"], "validation")

        res = self.client.post("/api/projects", json={"title": "X", "creatorAddress": CREATOR})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(set(res.json()), {"error", "message"})

        res = self.client.get("/api/projects/missing")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json(), {"error": "not_found", "message": "Project not found"})

    def test_commitments(self):
        project = self._create_project()
        res = self.client.post(
            f"/api/projects/{project['id']}/commitments",
            json={"investorAddress": INVESTOR, "amount": "51", "lockupPeriod": "7days"},
        )
        self.assertEqual(res.status_code, 201, res.text)
        body = res.json()
        self.assertEqual(body["commitment"]["platformFee"], "1.02")
        self.assertEqual(body["commitment"]["netAmount"], "49.98")
        self.assertEqual(body["projectStatus"], "active")

        listed = self.client.get(f"/api/projects/{project['id']}/commitments", params={"investorAddress": INVESTOR})
        self.assertEqual(len(listed.json()), 1)
        fetched = self.client.get(f"/api/projects/{project['id']}").json()
        self.assertEqual(fetched["fundingPercentage"], "49.98")

        commitment = listed.json()[0]
        self.assertTrue(commitment["lockupActive"])
        self.assertEqual(commitment["status"], "locked")
        self.assertGreater(commitment["lockupRemainingSeconds"], 7 * 86400 - 60)
        self.assertLessEqual(commitment["lockupRemainingSeconds"], 7 * 86400)

    def test_expired_lockup_reports_stored_status(self):
        expiry = datetime(2026, 1, 1, 12, 0)
        commitment = Commitment(
            id="c-1",
            project_id="p-1",
            investor_address=INVESTOR,
            amount=Decimal("10"),
            platform_fee=Decimal("0.20"),
            net_amount=Decimal("9.80"),
            lockup_period="10min",
            lockup_expiry=expiry,
            status="active",
        )
        body = _commitment_to_response(commitment, now=datetime(2026, 1, 1, 12, 1, tzinfo=timezone.utc))
        self.assertFalse(body["lockupActive"])
        self.assertEqual(body["lockupRemainingSeconds"], 0)
        self.assertEqual(body["status"], "active")

        body = _commitment_to_response(commitment, now=datetime(2026, 1, 1, 11, 55, tzinfo=timezone.utc))
        self.assertTrue(body["lockupActive"])
        self.assertEqual(body["lockupRemainingSeconds"], 300)
        self.assertEqual(body["status"], "locked")

    def test_withdraw_and_repay_cycle(self):
        project, withdrawal = self._borrowing_project()
        self.assertEqual(withdrawal["amount"], "100.00")
        self.assertEqual(withdrawal["status"], "borrowing")
        self.assertEqual(withdrawal["loanDetails"]["totalRepayment"], "110.00")
        self.assertEqual(withdrawal["loanDetails"]["interest"], "10.00")

        again = self.client.post("/api/withdraw", json={"projectId": project["id"], "creatorAddress": CREATOR}).json()
        self.assertEqual(again["txRef"], withdrawal["txRef"])
        self.assertTrue(again["alreadyProcessed"])
        self.assertEqual(self.ledger.transfer_calls, 1)

        self.ledger.set_balance(project["custodialAddress"], "80")
        res = self.client.post("/api/repay", json={"projectId": project["id"], "source": "manual"})
        self.assertEqual(res.status_code, 200, res.text)
        body = res.json()
        self.assertFalse(body["repaid"])
        self.assertEqual(Decimal(body["remaining"]), Decimal("30"))
        self.assertEqual(Decimal(body["expectedAmount"]), Decimal("110"))

        self.ledger.set_balance(project["custodialAddress"], "110")
        body = self.client.post("/api/repay", json={"projectId": project["id"], "checkerType": "api"}).json()
        self.assertTrue(body["repaid"])
        self.assertEqual(body["loanDetails"]["status"], "repaid")

        status = self.client.get("/api/repay", params={"projectId": project["id"]}).json()
        self.assertEqual(status["status"], "repaid")
        self.assertEqual(status["repaymentAmount"], "110.00")
        self.assertEqual(len(status["recentChecks"]), 2)

    def test_withdraw_errors(self):
        project = self._create_project()
        res = self.client.post("/api/withdraw", json={"projectId": project["id"], "creatorAddress": STRANGER})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.json()["error"], "unauthorized")

        res = self.client.post("/api/withdraw", json={"projectId": project["id"], "creatorAddress": CREATOR})
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["error"], "precondition")

        res = self.client.post("/api/withdraw", json={"projectId": project["id"]})
        self.assertEqual(res.status_code, 400)

    def test_ledger_outage_maps_to_bad_gateway(self):
        project, _ = self._borrowing_project()
        self.ledger.failing_addresses.add(project["custodialAddress"])
        res = self.client.post("/api/repay", json={"projectId": project["id"]})
        self.assertEqual(res.status_code, 502)
        self.assertEqual(res.json()["error"], "ledger")

    def test_transfer_dropped_mid_flight_maps_to_bad_gateway(self):
        project = self._funded_project()
        self.ledger.crash_after_transfer = True
        res = self.client.post("/api/withdraw", json={"projectId": project["id"], "creatorAddress": CREATOR})
        self.assertEqual(res.status_code, 502)
        self.assertEqual(res.json()["error"], "ledger")

        res = self.client.post("/api/withdraw", json={"projectId": project["id"], "creatorAddress": CREATOR})
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(res.json()["status"], "borrowing")
        self.assertEqual(self.ledger.transfer_calls, 1)

    def test_locked_custody_maps_to_service_unavailable(self):
        project = self._funded_project()
        locked = KeyCustody(CustodyConfig(encrypt_secret(MASTER_SEED, TEST_KEY), "not-the-key"))
        app.state.reconciler = SettlementReconciler(
            self.session_factory, locked, self.ledger, ReconcilerConfig(check_delay_seconds=0, check_workers=1)
        )
        res = self.client.post("/api/withdraw", json={"projectId": project["id"], "creatorAddress": CREATOR})
        self.assertEqual(res.status_code, 503)
        self.assertEqual(res.json()["error"], "custody_unavailable")
        self.assertEqual(self.ledger.transfer_calls, 0)
        self.assertEqual(self.client.get(f"/api/projects/{project['id']}").json()["status"], "funded")

    def test_check_all_requires_api_key(self):
        self.assertEqual(self.client.get("/api/repay/check-all").status_code, 401)
        res = self.client.get("/api/repay/check-all", params={"apiKey": "wrong"})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["error"], "unauthorized")

    def test_check_all_without_configured_key_rejects_everything(self):
        app.dependency_overrides[get_checker_api_key] = lambda: ""
        self.assertEqual(self.client.get("/api/repay/check-all", params={"apiKey": ""}).status_code, 401)

    def test_check_all(self):
        project, _ = self._borrowing_project()
        self.ledger.set_balance(project["custodialAddress"], "110")
        res = self.client.get("/api/repay/check-all", params={"apiKey": API_KEY})
        self.assertEqual(res.status_code, 200, res.text)
        body = res.json()
        self.assertEqual(body["totalChecked"], 1)
        self.assertEqual(body["newlyRepaid"], 1)
        self.assertEqual(body["stillPending"], 0)
        self.assertEqual(body["failed"], 0)
        self.assertEqual(body["results"][0]["projectId"], project["id"])
        self.assertTrue(body["results"][0]["repaid"])


if __name__ == "__main__":
    unittest.main()
