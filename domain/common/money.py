"""Decimal helpers shared by the ledgers."""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Tolerance used when comparing provider-reported amounts with stored totals
AMOUNT_TOLERANCE = Decimal("0.01")

# ISO-4217 currencies without minor units
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "CLP", "VND", "PYG", "UGX"}


def to_money(value: Union[Decimal, str, int, float, None]) -> Decimal:
    """Coerce to a Decimal rounded half-up to cents (None -> 0.00)."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def amounts_match(a: Decimal, b: Decimal) -> bool:
    return abs(to_money(a) - to_money(b)) <= AMOUNT_TOLERANCE


def to_minor_units(amount: Decimal, currency: str) -> int:
    exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
    return int((to_money(amount) * (Decimal(10) ** exponent)).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
    return to_money(Decimal(amount) / (Decimal(10) ** exponent))
