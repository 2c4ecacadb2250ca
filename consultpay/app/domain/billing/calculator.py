"""
Billing Calculator.

Pure functions that turn a billing window and a per-minute rate into money.
Amounts are always derived from whole elapsed seconds, never from the
rounded display duration.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


@dataclass(frozen=True)
class BillingResult:
    duration_seconds: int
    duration_minutes: Decimal
    amount: Decimal


def round2(value) -> Decimal:
    """Round to currency subunits, half-up."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def elapsed_seconds(start: Optional[datetime], end: datetime) -> int:
    if start is None:
        return 0
    return max(0, math.floor((end - start).total_seconds()))


def compute_billing(billing_start: Optional[datetime], end: datetime, rate_per_minute) -> BillingResult:
    """
    Compute duration and amount for a consultation.

    No billing start means the other party never accepted: nothing is owed.
    A zero rate still reports the duration.

    Example:
        61 seconds at 3.00/min -> duration 1.02 min, amount 3.05
    """
    if billing_start is None:
        return BillingResult(duration_seconds=0, duration_minutes=ZERO, amount=ZERO)

    seconds = elapsed_seconds(billing_start, end)
    rate = round2(rate_per_minute)

    return BillingResult(
        duration_seconds=seconds,
        duration_minutes=round2(Decimal(seconds) / 60),
        amount=round2(Decimal(seconds) * rate / 60),
    )


def split_commission(amount, commission_rate) -> Tuple[Decimal, Decimal]:
    """
    Split a client payment into (provider_share, platform_share).

    The provider share is rounded; the platform keeps the remainder so the
    two parts always add up to the payment.
    """
    amount = round2(amount)
    provider_share = round2(amount * (Decimal(1) - Decimal(str(commission_rate))))
    return provider_share, amount - provider_share


def billing_increment(rate_per_minute, interval_seconds: int) -> Decimal:
    """Cost of one balance-check interval at the given rate."""
    return round2(round2(rate_per_minute) * Decimal(interval_seconds) / 60)


def max_talk_minutes(balance, rate_per_minute) -> Optional[int]:
    """Whole minutes the balance can pay for. None for free consultations."""
    rate = round2(rate_per_minute)
    if rate <= 0:
        return None
    return int(round2(balance) // rate)
