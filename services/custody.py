"""
Key custody for project escrow wallets.

One process-wide master secret (a 32-byte Ed25519 seed) is kept Fernet-encrypted in configuration.
Custodial keypairs are re-derived from it on demand with Substrate-style hard junctions
("//0", "//1", "//1//<project id>") and addressed with SS58. The only persisted link between a
project and its keys is the derivation path.

Fixed system constants: Ed25519 signatures, SS58 network prefix 0 unless configured otherwise.

Plaintext seeds live in bytearrays for the duration of one operation and are zeroed on exit.
Nothing in this module logs or persists secret material.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

import base58
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from services.errors import CustodyError, DecryptionError, FormatError, ValidationError

logger = logging.getLogger("bochica.custody")

SIGNATURE_SCHEME = "ed25519"
DEFAULT_SS58_FORMAT = 0

PLATFORM_FEE_PATH = "//0"
ESCROW_PATH = "//1"

SEED_LENGTH = 32
PUBLIC_KEY_LENGTH = 32

# SCALE encoding of the string "Ed25519HDKD" (compact length 11 << 2 == 0x2c)
_HDKD_PREFIX = b"\x2cEd25519HDKD"
_SS58_PREFIX = b"SS58PRE"
_PATH_RE = re.compile(r"(//[^/]+)*")
_FERNET_CONTEXT = b"custody-master-secret"
# version(1) + timestamp(8) + iv(16) + hmac(32); body is a positive multiple of 16
_FERNET_OVERHEAD = 57


@dataclass(frozen=True)
class CustodyConfig:
    master_secret_encrypted: str = field(repr=False)
    encryption_key: str = field(repr=False)
    ss58_format: int = DEFAULT_SS58_FORMAT


# ── Secret encryption ─────────────────────────────────────────


def _fernet(key: str) -> Fernet:
    if not key:
        raise CustodyError("Custody encryption key is not configured")
    derived = hmac.new(key.encode("utf-8"), _FERNET_CONTEXT, hashlib.sha256).digest()
    return Fernet(base64.urlsafe_b64encode(derived))


def _check_token_format(ciphertext: str) -> None:
    if not isinstance(ciphertext, str) or not ciphertext:
        raise FormatError("Ciphertext is empty")
    try:
        raw = base64.urlsafe_b64decode(ciphertext.encode("ascii"))
    except (binascii.Error, ValueError) as e:
        raise FormatError("Ciphertext is not valid base64") from e
    body = len(raw) - _FERNET_OVERHEAD
    if raw[:1] != b"\x80" or body < 16 or body % 16 != 0:
        raise FormatError("Ciphertext is not a recognised encrypted-secret token")


def encrypt_secret(secret: Union[str, bytes, bytearray], key: str) -> str:
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if not secret:
        raise ValidationError("Cannot encrypt an empty secret")
    return _fernet(key).encrypt(bytes(secret)).decode("ascii")


def decrypt_secret(ciphertext: str, key: str) -> bytes:
    """Raises FormatError for malformed input and DecryptionError for a wrong key or tampered token."""
    _check_token_format(ciphertext)
    try:
        return _fernet(key).decrypt(ciphertext.encode("ascii"))
    except InvalidToken as e:
        raise DecryptionError("Failed to decrypt secret: wrong key or tampered ciphertext") from e


def parse_master_secret(plaintext: bytes) -> bytearray:
    """Hex seed (optionally 0x-prefixed) -> 32-byte bytearray."""
    try:
        text = plaintext.decode("ascii").strip()
    except UnicodeDecodeError as e:
        raise FormatError("Master secret is not a hex-encoded seed") from e
    if text.startswith(("0x", "0X")):
        text = text[2:]
    if len(text) != SEED_LENGTH * 2:
        raise FormatError(f"Master secret must be a {SEED_LENGTH}-byte hex seed")
    try:
        return bytearray.fromhex(text)
    except ValueError as e:
        raise FormatError("Master secret is not a hex-encoded seed") from e


def wipe(buffer: bytearray) -> None:
    buffer[:] = bytes(len(buffer))


# ── Derivation ────────────────────────────────────────────────


def _compact_length(n: int) -> bytes:
    if n < 1 << 6:
        return bytes([n << 2])
    if n < 1 << 14:
        return ((n << 2) | 1).to_bytes(2, "little")
    if n < 1 << 30:
        return ((n << 2) | 2).to_bytes(4, "little")
    raise ValidationError("Derivation junction is too long")


def _chain_code(junction: str) -> bytes:
    if junction.isdigit() and int(junction) < 1 << 64:
        encoded = int(junction).to_bytes(8, "little")
    else:
        raw = junction.encode("utf-8")
        encoded = _compact_length(len(raw)) + raw
    if len(encoded) > 32:
        return hashlib.blake2b(encoded, digest_size=32).digest()
    return encoded.ljust(32, b"\x00")


def parse_path(path: str) -> list[str]:
    """Split "//a//b" into junctions. Only hard junctions exist for Ed25519."""
    if not isinstance(path, str) or not _PATH_RE.fullmatch(path):
        raise ValidationError(f"Unsupported derivation path {path!r}: only hard junctions (//name) are allowed")
    return [j for j in path.split("//") if j]


def derive_seed(master_secret: Union[bytes, bytearray], path: str) -> bytes:
    if len(master_secret) != SEED_LENGTH:
        raise FormatError(f"Master secret must be {SEED_LENGTH} bytes")
    seed = bytes(master_secret)
    for junction in parse_path(path):
        seed = hashlib.blake2b(_HDKD_PREFIX + seed + _chain_code(junction), digest_size=32).digest()
    return seed


def _public_key(seed: bytes) -> bytes:
    return Ed25519PrivateKey.from_private_bytes(seed).public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def derive_address(
    master_secret: Union[bytes, bytearray],
    path: str,
    ss58_format: int = DEFAULT_SS58_FORMAT,
) -> str:
    return encode_address(_public_key(derive_seed(master_secret, path)), ss58_format)


def project_derivation_path(project_id: str) -> str:
    return f"{ESCROW_PATH}//{project_id}"


# ── SS58 addresses ────────────────────────────────────────────


def _ss58_checksum(payload: bytes) -> bytes:
    return hashlib.blake2b(_SS58_PREFIX + payload, digest_size=64).digest()[:2]


def encode_address(public_key: bytes, ss58_format: int = DEFAULT_SS58_FORMAT) -> str:
    if len(public_key) != PUBLIC_KEY_LENGTH:
        raise ValidationError(f"Public key must be {PUBLIC_KEY_LENGTH} bytes")
    if not 0 <= ss58_format < 64:
        raise ValidationError(f"Unsupported SS58 format {ss58_format}")
    payload = bytes([ss58_format]) + bytes(public_key)
    return base58.b58encode(payload + _ss58_checksum(payload)).decode("ascii")


def decode_address(address: str) -> tuple[int, bytes]:
    """Return (ss58_format, public_key) or raise ValidationError."""
    try:
        raw = base58.b58decode(address)
    except ValueError as e:
        raise ValidationError(f"Invalid address {address!r}") from e
    if len(raw) != 1 + PUBLIC_KEY_LENGTH + 2 or raw[0] >= 64:
        raise ValidationError(f"Invalid address {address!r}")
    payload, checksum = raw[:-2], raw[-2:]
    if not hmac.compare_digest(_ss58_checksum(payload), checksum):
        raise ValidationError(f"Invalid address checksum for {address!r}")
    return payload[0], payload[1:]


def is_valid_address(address: str, ss58_format: Optional[int] = None) -> bool:
    if not isinstance(address, str) or not address:
        return False
    try:
        fmt, _ = decode_address(address)
    except ValidationError:
        return False
    return ss58_format is None or fmt == ss58_format


# ── Custody service ───────────────────────────────────────────


class CustodialKeypair:
    """A derived keypair usable for signing until the owning context exits."""

    def __init__(self, derivation_path: str, private_key: Ed25519PrivateKey, ss58_format: int):
        self.derivation_path = derivation_path
        self._private_key: Optional[Ed25519PrivateKey] = private_key
        self.public_key = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self.address = encode_address(self.public_key, ss58_format)

    def sign(self, data: bytes) -> bytes:
        if self._private_key is None:
            raise CustodyError("Keypair has been released")
        return self._private_key.sign(data)

    def release(self) -> None:
        self._private_key = None

    def __repr__(self) -> str:
        return f"CustodialKeypair(path={self.derivation_path!r}, address={self.address!r})"


class KeyCustody:
    """Derives custodial addresses and short-lived signing keypairs from the injected master secret."""

    def __init__(self, config: CustodyConfig):
        self._config = config

    @property
    def ss58_format(self) -> int:
        return self._config.ss58_format

    @property
    def configured(self) -> bool:
        return bool(self._config.master_secret_encrypted and self._config.encryption_key)

    @contextmanager
    def unlocked_master_secret(self) -> Iterator[bytearray]:
        if not self._config.master_secret_encrypted:
            raise CustodyError("Custody master secret is not configured")
        plaintext = decrypt_secret(self._config.master_secret_encrypted, self._config.encryption_key)
        secret = parse_master_secret(plaintext)
        del plaintext
        try:
            yield secret
        finally:
            wipe(secret)

    def address_for(self, path: str) -> str:
        with self.unlocked_master_secret() as secret:
            return derive_address(secret, path, self.ss58_format)

    def platform_fee_address(self) -> str:
        return self.address_for(PLATFORM_FEE_PATH)

    def escrow_address(self) -> str:
        return self.address_for(ESCROW_PATH)

    @contextmanager
    def signing_keypair(self, path: str) -> Iterator[CustodialKeypair]:
        with self.unlocked_master_secret() as secret:
            seed = derive_seed(secret, path)
        keypair = CustodialKeypair(path, Ed25519PrivateKey.from_private_bytes(seed), self.ss58_format)
        del seed
        logger.debug(f"Signing keypair unlocked for path {path}")
        try:
            yield keypair
        finally:
            keypair.release()
