"""Checkout pricing.

Amounts are integer minor units (cents). The card processing fee is a
percentage of the subtotal, in basis points, plus a fixed amount, rounded
half-up to the nearest minor unit.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from eventhub import config

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class PriceQuote:
    unit_price_minor: int
    quantity: int
    subtotal_minor: int
    fee_minor: int
    total_minor: int


def processing_fee(
    subtotal_minor: int,
    fee_bps: int | None = None,
    fixed_minor: int | None = None,
) -> int:
    bps = config.PROCESSING_FEE_BPS if fee_bps is None else fee_bps
    fixed = config.PROCESSING_FEE_FIXED_MINOR if fixed_minor is None else fixed_minor
    variable = (Decimal(subtotal_minor) * bps / Decimal(10000)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(variable) + fixed


def quote(price_minor: int, quantity: int) -> PriceQuote:
    if price_minor < 0:
        raise ValueError("price must be non-negative")
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    subtotal = price_minor * quantity
    # Free tiers carry no card fee.
    fee = processing_fee(subtotal) if subtotal > 0 else 0
    return PriceQuote(
        unit_price_minor=price_minor,
        quantity=quantity,
        subtotal_minor=subtotal,
        fee_minor=fee,
        total_minor=subtotal + fee,
    )


def to_minor(amount: Decimal) -> int:
    return int((Decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP) * 100))


def to_major(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / 100).quantize(_CENT)
