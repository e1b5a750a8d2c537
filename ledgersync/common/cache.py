"""Per-invocation memo for upstream lookups."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Hashable, TypeVar

T = TypeVar("T")

CURRENT_EPOCH_CACHE_KEY = "ledger.current_epoch"


class LookupCache:
    """Memoizes lookups for the lifetime of one job invocation.

    Runners build a fresh instance per ``execute`` and drop it afterwards, so
    nothing survives across invocations.
    """

    def __init__(self) -> None:
        self._values: Dict[Hashable, Any] = {}

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[T]]) -> T:
        if key in self._values:
            return self._values[key]
        value = await loader()
        self._values[key] = value
        return value

    def peek(self, key: Hashable, default: Any = None) -> Any:
        return self._values.get(key, default)

    def store(self, key: Hashable, value: Any) -> None:
        self._values[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self._values


__all__ = ["CURRENT_EPOCH_CACHE_KEY", "LookupCache"]
