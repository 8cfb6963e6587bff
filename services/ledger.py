"""
Settlement ledger collaborator.

LedgerClient is the narrow interface the reconciler consumes: balance queries, signed transfers
awaited to finality, and the transfer history of an address (used to detect a payout that was
submitted before a crash). GatewayLedgerClient implements it over an HTTP ledger gateway.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import aiohttp

from services.custody import CustodialKeypair
from services.errors import LedgerError

logger = logging.getLogger("bochica.ledger")


class TransferStatus(str, Enum):
    PENDING = "pending"
    IN_BLOCK = "inBlock"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass(frozen=True)
class TransferReceipt:
    tx_ref: str
    status: TransferStatus
    from_address: str
    to_address: str
    amount_units: int
    asset_id: int


class LedgerClient(ABC):
    @abstractmethod
    async def balance_of(self, address: str, asset_id: int) -> int:
        """Balance in the asset's native integer units."""

    @abstractmethod
    async def transfer(
        self,
        keypair: CustodialKeypair,
        to_address: str,
        amount_units: int,
        asset_id: int,
    ) -> TransferReceipt:
        """Submit a signed transfer and return once it is finalized. Raises LedgerError on failure."""

    @abstractmethod
    async def transfers_from(self, address: str, asset_id: int) -> list[TransferReceipt]:
        """Known outgoing transfers of `address` for `asset_id`, newest first."""

    async def close(self) -> None:
        return None


def signing_message(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


class GatewayLedgerClient(LedgerClient):
    def __init__(
        self,
        base_url: str,
        request_timeout: float = 10.0,
        poll_interval: float = 2.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(method, url, **kwargs) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise LedgerError(f"Ledger gateway {method} {path} failed: HTTP {resp.status} {text[:200]}")
                return await resp.json()
        except aiohttp.ClientError as e:
            raise LedgerError(f"Ledger gateway request {method} {path} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise LedgerError(f"Ledger gateway request {method} {path} timed out") from e
        except ValueError as e:
            raise LedgerError(f"Ledger gateway {method} {path} returned invalid JSON") from e

    @staticmethod
    def _receipt(data: dict[str, Any], asset_id: int) -> TransferReceipt:
        try:
            return TransferReceipt(
                tx_ref=str(data["txRef"]),
                status=TransferStatus(data.get("status", TransferStatus.PENDING.value)),
                from_address=data.get("from", ""),
                to_address=data.get("to", ""),
                amount_units=int(data.get("amount", 0)),
                asset_id=int(data.get("assetId", asset_id)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"Malformed transfer response from ledger gateway: {data!r}") from e

    async def balance_of(self, address: str, asset_id: int) -> int:
        data = await self._request("GET", f"/assets/{asset_id}/balances/{address}")
        try:
            return int(data.get("balance", 0))
        except (TypeError, ValueError) as e:
            raise LedgerError(f"Malformed balance response from ledger gateway: {data!r}") from e

    async def transfer(
        self,
        keypair: CustodialKeypair,
        to_address: str,
        amount_units: int,
        asset_id: int,
    ) -> TransferReceipt:
        payload = {
            "from": keypair.address,
            "to": to_address,
            "assetId": asset_id,
            "amount": str(amount_units),
            "nonce": uuid.uuid4().hex,
        }
        body = {
            "payload": payload,
            "signature": keypair.sign(signing_message(payload)).hex(),
            "publicKey": keypair.public_key.hex(),
        }
        receipt = self._receipt(await self._request("POST", f"/assets/{asset_id}/transfers", json=body), asset_id)
        logger.info(f"Transfer {receipt.tx_ref} submitted: {amount_units} units of asset {asset_id} to {to_address}")

        while receipt.status != TransferStatus.FINALIZED:
            if receipt.status == TransferStatus.FAILED:
                raise LedgerError(f"Transfer {receipt.tx_ref} failed on-ledger")
            await asyncio.sleep(self.poll_interval)
            receipt = self._receipt(await self._request("GET", f"/transfers/{receipt.tx_ref}"), asset_id)
            logger.debug(f"Transfer {receipt.tx_ref} status: {receipt.status.value}")
        return receipt

    async def transfers_from(self, address: str, asset_id: int) -> list[TransferReceipt]:
        data = await self._request("GET", f"/assets/{asset_id}/transfers", params={"from": address})
        return [self._receipt(item, asset_id) for item in data.get("transfers", [])]
