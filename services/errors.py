"""
Error taxonomy for the settlement core.
Every error carries a machine-readable `kind` and a human message; the API layer maps kinds to HTTP status codes.
"""
from __future__ import annotations


class SettlementError(Exception):
    kind = "settlement_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind, "message": self.message}


class ValidationError(SettlementError):
    """Bad input. No state change."""

    kind = "validation"


class NotFoundError(SettlementError):
    kind = "not_found"


class PreconditionError(SettlementError):
    """Requested operation is not allowed in the current state. No state change."""

    kind = "precondition"


class UnauthorizedError(SettlementError):
    kind = "unauthorized"


class ConcurrencyError(SettlementError):
    """Another writer updated the same project first. Safe to retry."""

    kind = "concurrency"


class CustodyError(SettlementError):
    """Custody unavailable: the master secret could not be recovered."""

    kind = "custody_unavailable"


class FormatError(CustodyError):
    pass


class DecryptionError(CustodyError):
    pass


class CustodyIntegrityError(SettlementError):
    """Re-derived custodial address differs from the stored one."""

    kind = "custody_integrity"


class LedgerError(SettlementError):
    kind = "ledger"


class FinalityTimeoutError(LedgerError):
    kind = "timeout"
