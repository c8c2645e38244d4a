"""Token amount conversion helpers using fixed base-unit precision."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR


U64_MAX = 2**64 - 1
DEFAULT_DECIMALS = 6


def _quant(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def _to_decimal(value: Decimal | float | int | str) -> Decimal:
    try:
        dec = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value}") from e
    if not dec.is_finite() or dec < 0:
        raise ValueError(f"Invalid amount: {value}")
    return dec


def amount_to_base_units(value: Decimal | float | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a spend amount to base units, rounding up (conservative)."""
    dec = _to_decimal(value).quantize(_quant(decimals), rounding=ROUND_CEILING)
    return int(dec.scaleb(decimals))


def limit_to_base_units(value: Decimal | float | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a budget or deposit to base units, rounding down (conservative)."""
    dec = _to_decimal(value).quantize(_quant(decimals), rounding=ROUND_FLOOR)
    return int(dec.scaleb(decimals))


def base_units_to_decimal(value: int, decimals: int = DEFAULT_DECIMALS) -> Decimal:
    return Decimal(value).scaleb(-decimals).quantize(_quant(decimals))


def format_base_units(value: int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Format base units for display, e.g. ``1500000 -> '1.500000'``."""
    return f"{base_units_to_decimal(value, decimals):f}"


def checked_add(a: int, b: int) -> int | None:
    """Add two u64 amounts, returning None when the sum overflows."""
    total = a + b
    if total > U64_MAX:
        return None
    return total
