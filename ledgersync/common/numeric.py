"""Lossless coercion of ledger quantities.

Koios returns lovelace amounts as decimal strings so that they survive JSON
without float rounding; everything here stays in ``int`` space.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    if parsed != parsed.to_integral_value():
        return None
    return int(parsed)


def truncated_percent(numerator: int, denominator: int) -> Optional[Decimal]:
    """``numerator / denominator * 100`` truncated (not rounded) to two places."""

    if denominator <= 0:
        return None
    return Decimal((numerator * 10000) // denominator) / Decimal(100)


__all__ = ["to_int", "truncated_percent"]
