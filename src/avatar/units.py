"""Conversion between human-entered decimal amounts and integer base units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation


def to_base_units(value: Decimal | int | str, decimals: int = 18) -> int:
    """Convert a decimal amount to base units; reject sub-unit precision."""
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value}") from e
    if not dec.is_finite() or dec < 0:
        raise ValueError(f"Amount must be a non-negative number: {value}")
    scaled = dec.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{value} has more than {decimals} decimal places")
    return int(scaled)


def from_base_units(value: int, decimals: int = 18) -> Decimal:
    """Convert integer base units to a Decimal amount."""
    return Decimal(int(value)).scaleb(-decimals)


def format_units(value: int, decimals: int = 18, symbol: str = "") -> str:
    """Format base units for display, trimming trailing zeros."""
    amount = from_base_units(value, decimals)
    text = format(amount.normalize(), "f") if amount else "0"
    return f"{text} {symbol}".rstrip()
