"""Shared fixtures for the settlement tests: an in-memory ledger, throwaway databases and custody."""
import asyncio
import hashlib
import os
import tempfile
import uuid
from collections import defaultdict
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from database import init_db, make_session_factory
from models import Project
from services import financial, projects
from services.custody import CustodyConfig, KeyCustody, encode_address, encrypt_secret
from services.errors import LedgerError
from services.ledger import LedgerClient, TransferReceipt, TransferStatus
from services.lifecycle import ProjectStatus

ASSET_ID = 1984
DECIMALS = 6
TEST_KEY = "test-encryption-key"
MASTER_SEED = "11" * 32
OTHER_SEED = "22" * 32


def make_address(label: str) -> str:
    return encode_address(hashlib.blake2b(label.encode("utf-8"), digest_size=32).digest())


CREATOR = make_address("creator")
INVESTOR = make_address("investor")
STRANGER = make_address("stranger")


def make_custody(seed_hex: str = MASTER_SEED, key: str = TEST_KEY) -> KeyCustody:
    return KeyCustody(CustodyConfig(encrypt_secret(seed_hex, key), key))


def units(amount) -> int:
    return financial.to_units(Decimal(str(amount)), DECIMALS)


class InMemoryLedger(LedgerClient):
    """Instant-finality ledger with switches for the failure modes the reconciler must survive."""

    def __init__(self):
        self.balances: dict[tuple[str, int], int] = defaultdict(int)
        self.history: list[TransferReceipt] = []
        self.transfer_calls = 0
        self.balance_calls = 0
        self.failing_addresses: set[str] = set()
        self.hang_transfers = False
        self.crash_after_transfer = False
        self.balance_exception: Optional[Exception] = None
        self.balance_delay = 0.0

    def set_balance(self, address: str, amount, asset_id: int = ASSET_ID) -> None:
        self.balances[(address, asset_id)] = units(amount)

    def balance(self, address: str, asset_id: int = ASSET_ID) -> Decimal:
        return financial.from_units(self.balances[(address, asset_id)], DECIMALS)

    async def balance_of(self, address: str, asset_id: int) -> int:
        self.balance_calls += 1
        if self.balance_delay:
            await asyncio.sleep(self.balance_delay)
        if self.balance_exception is not None:
            raise self.balance_exception
        if address in self.failing_addresses:
            raise LedgerError("Ledger node unreachable")
        return self.balances[(address, asset_id)]

    async def transfer(self, keypair, to_address: str, amount_units: int, asset_id: int) -> TransferReceipt:
        self.transfer_calls += 1
        keypair.sign(b"transfer")
        if self.hang_transfers:
            await asyncio.Event().wait()
        source = (keypair.address, asset_id)
        if self.balances[source] < amount_units:
            raise LedgerError("Insufficient balance")
        self.balances[source] -= amount_units
        self.balances[(to_address, asset_id)] += amount_units
        receipt = TransferReceipt(
            tx_ref=f"0x{uuid.uuid4().hex}",
            status=TransferStatus.FINALIZED,
            from_address=keypair.address,
            to_address=to_address,
            amount_units=amount_units,
            asset_id=asset_id,
        )
        self.history.append(receipt)
        if self.crash_after_transfer:
            self.crash_after_transfer = False
            raise ConnectionResetError("Connection lost after submission")
        return receipt

    async def transfers_from(self, address: str, asset_id: int) -> list[TransferReceipt]:
        return [r for r in reversed(self.history) if r.from_address == address and r.asset_id == asset_id]


def temp_database_url() -> str:
    path = os.path.join(tempfile.mkdtemp(prefix="bochica-db-"), "test.db")
    return f"sqlite+aiosqlite:///{path}"


async def make_database():
    engine = create_async_engine(temp_database_url(), poolclass=NullPool)
    await init_db(engine)
    return engine, make_session_factory(engine)


async def create_project(session_factory, custody, goal="100", rate="10", creator=CREATOR, title="Solar farm") -> Project:
    async with session_factory() as session:
        project = await projects.create_project(
            session,
            custody,
            title=title,
            description="Community solar installation",
            goal_amount=goal,
            interest_rate=rate,
            creator_address=creator,
        )
        await session.commit()
        return project


async def create_funded_project(session_factory, custody, ledger: InMemoryLedger, goal="100", rate="10", **kwargs) -> Project:
    """Project at its funding goal, with the escrow holding exactly the goal amount."""
    project = await create_project(session_factory, custody, goal=goal, rate=rate, **kwargs)
    async with session_factory() as session:
        stored = await session.get(Project, project.id)
        stored.current_funding = Decimal(goal)
        stored.status = ProjectStatus.FUNDED.value
        await session.commit()
    ledger.set_balance(project.custodial_address, goal)
    return project
