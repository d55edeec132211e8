# services/payments/money.py
from __future__ import annotations
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    # never pass float directly; stringify first to avoid binary artifacts
    return Decimal(str(x or 0))


def platform_fee(budget, percent) -> Decimal:
    """Fee in display currency, rounded half-up to cents."""
    return (D(budget) * D(percent) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    return int(D(amount).quantize(CENT, rounding=ROUND_HALF_UP) * 100)


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(CENT)


def format_amount(amount) -> str:
    """'50.00' style string, as PayPal expects in amount.value."""
    return str(D(amount).quantize(CENT, rounding=ROUND_HALF_UP))
