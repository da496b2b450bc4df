from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of_bps(amount_cents: int, rate_bps: int) -> int:
    """amount * rate / 10000, nearest cent (half-up)."""
    return round_half_up(Decimal(amount_cents) * Decimal(rate_bps) / Decimal(10000))


def cents_to_whole_units(amount_cents: int) -> int:
    """Mobile-money providers take whole currency units only."""
    return round_half_up(Decimal(amount_cents) / Decimal(100))


def units_to_cents(amount_units) -> int:
    return round_half_up(Decimal(str(amount_units)) * Decimal(100))
