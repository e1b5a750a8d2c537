"""Utilities for working with timezone-aware datetimes and ledger timestamps."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Return a UTC-aware datetime."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_unix_seconds(value: Any) -> Optional[datetime]:
    """Convert a unix-seconds ledger field to a UTC datetime.

    Upstream reports unknown times as ``0``; those and anything non-positive
    become ``None``.
    """

    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OSError, OverflowError, ValueError):
        return None


__all__ = [
    "utcnow",
    "ensure_aware",
    "from_unix_seconds",
]
