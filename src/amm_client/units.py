"""Conversions between human amounts and integer smallest-denomination units."""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, localcontext

NATIVE_DECIMALS = 18
GWEI_DECIMALS = 9
MAX_UINT256 = 2**256 - 1

# Wide enough for any uint256 scaled by 18 decimals.
_PRECISION = 100


def to_base_units(amount: Decimal | str | int, decimals: int = NATIVE_DECIMALS) -> int:
    """Convert a human amount into integer base units, truncating extra digits."""
    value = Decimal(str(amount))
    if value < 0:
        raise ValueError(f"Amount cannot be negative: {amount}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = value.scaleb(decimals).quantize(Decimal("1"), rounding=ROUND_DOWN)
    return int(scaled)


def from_base_units(amount: int, decimals: int = NATIVE_DECIMALS) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(int(amount)).scaleb(-decimals)


def to_wei(amount: Decimal | str | int) -> int:
    return to_base_units(amount, NATIVE_DECIMALS)


def from_wei(amount: int) -> Decimal:
    return from_base_units(amount, NATIVE_DECIMALS)


def gwei_to_wei(amount: Decimal | str | int) -> int:
    return to_base_units(amount, GWEI_DECIMALS)


def wei_to_gwei(amount: int) -> Decimal:
    return from_base_units(amount, GWEI_DECIMALS)
