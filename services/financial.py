"""
Financial rules: platform fee, loan interest, funding progress, lockups and ledger unit conversion.
All functions are pure and operate on Decimal. Rounding to two places happens only in
quantize_money / split_commitment, i.e. where money is persisted or transferred.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Union

from services.errors import ValidationError

PLATFORM_FEE_RATE = Decimal("0.02")
MIN_PLATFORM_FEE = Decimal("0.01")
MONEY_QUANTUM = Decimal("0.01")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, str]


class LockupPeriod(str, Enum):
    TEN_MINUTES = "10min"
    ONE_DAY = "24h"
    SEVEN_DAYS = "7days"


LOCKUP_DURATIONS: dict[LockupPeriod, timedelta] = {
    LockupPeriod.TEN_MINUTES: timedelta(minutes=10),
    LockupPeriod.ONE_DAY: timedelta(hours=24),
    LockupPeriod.SEVEN_DAYS: timedelta(days=7),
}


def to_decimal(value: Number) -> Decimal:
    """Coerce to Decimal. Floats are refused: they cannot represent money exactly."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"Money values must be Decimal, int or str, got {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(value)
        except Exception as e:
            raise ValidationError(f"Invalid amount: {value!r}") from e
    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result


def quantize_money(value: Number) -> Decimal:
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_money_down(value: Number) -> Decimal:
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_DOWN)


def platform_fee(amount: Number, rate: Number = PLATFORM_FEE_RATE) -> Decimal:
    return to_decimal(amount) * to_decimal(rate)


def net_amount(amount: Number, rate: Number = PLATFORM_FEE_RATE) -> Decimal:
    amount = to_decimal(amount)
    return amount - platform_fee(amount, rate)


def split_commitment(amount: Number, rate: Number = PLATFORM_FEE_RATE) -> tuple[Decimal, Decimal]:
    """
    Persisted (fee, net) pair for a commitment. The fee is rounded once and the net amount
    takes the remainder, so fee + net always equals the quantized amount.
    """
    amount = quantize_money(amount)
    fee = quantize_money(platform_fee(amount, rate))
    return fee, amount - fee


def interest(principal: Number, rate: Number) -> Decimal:
    return to_decimal(principal) * to_decimal(rate) / HUNDRED


def total_repayment(principal: Number, rate: Number) -> Decimal:
    principal = to_decimal(principal)
    return principal + interest(principal, rate)


def loan_terms(principal: Number, rate: Number) -> tuple[Decimal, Decimal, Decimal]:
    """(principal, interest, total) as persisted on a loan; total is the exact sum of the other two."""
    principal = quantize_money(principal)
    interest_amount = quantize_money(interest(principal, rate))
    return principal, interest_amount, principal + interest_amount


def funding_percentage(current: Number, goal: Number) -> Decimal:
    goal = to_decimal(goal)
    if goal == 0:
        return Decimal(0)
    return min(HUNDRED, to_decimal(current) / goal * HUNDRED)


def repayment_percentage(balance: Number, total: Number) -> Decimal:
    total = to_decimal(total)
    if total == 0:
        return HUNDRED
    return to_decimal(balance) / total * HUNDRED


def lockup_expiry(period: Union[LockupPeriod, str], start: datetime) -> datetime:
    try:
        period = LockupPeriod(period)
    except ValueError as e:
        allowed = ", ".join(p.value for p in LockupPeriod)
        raise ValidationError(f"Unknown lockup period {period!r}; expected one of: {allowed}") from e
    return start + LOCKUP_DURATIONS[period]


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on reload; stored timestamps are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_lockup_active(expiry: Optional[datetime], now: datetime) -> bool:
    if expiry is None:
        return False
    return as_utc(expiry) > as_utc(now)


def remaining_lockup(expiry: datetime, now: datetime) -> timedelta:
    return max(timedelta(0), as_utc(expiry) - as_utc(now))


def to_units(amount: Number, decimals: int) -> int:
    """Convert to the ledger's integer units. Sub-unit dust is truncated, never rounded up."""
    scaled = to_decimal(amount).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_units(units: int, decimals: int) -> Decimal:
    return Decimal(int(units)).scaleb(-decimals)


def validate_goal_amount(goal: Number) -> Decimal:
    goal = to_decimal(goal)
    if goal <= 0:
        raise ValidationError("Invalid goal amount: must be greater than 0")
    return goal


def validate_interest_rate(rate: Number) -> Decimal:
    rate = to_decimal(rate)
    if rate < 0 or rate > HUNDRED:
        raise ValidationError("Interest rate must be between 0% and 100%")
    return rate


def validate_commitment_amount(
    amount: Number,
    max_amount: Optional[Number] = None,
    rate: Number = PLATFORM_FEE_RATE,
) -> Decimal:
    amount = to_decimal(amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0")
    if max_amount is not None and amount > to_decimal(max_amount):
        raise ValidationError(f"Amount cannot exceed {max_amount}")
    if platform_fee(amount, rate) < MIN_PLATFORM_FEE:
        raise ValidationError(f"Amount too small (minimum fee is {MIN_PLATFORM_FEE})")
    return amount
