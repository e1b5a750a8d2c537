"""Bounded fan-out over upstream entities."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Iterable, Mapping, Optional, TypeVar

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")

DEFAULT_CONCURRENCY = 5
MAX_ENV_CONCURRENCY = 20


@dataclass
class FetchFailure:
    id: str
    error: str


@dataclass
class FetchResult(Generic[ResultT]):
    successful: list[ResultT] = field(default_factory=list)
    failed: list[FetchFailure] = field(default_factory=list)


def resolve_concurrency(env: Mapping[str, str] | None = None, default: int = DEFAULT_CONCURRENCY) -> int:
    """Read ``VOTER_SYNC_CONCURRENCY`` when it holds a value in 1..20."""

    env = os.environ if env is None else env
    raw = env.get("VOTER_SYNC_CONCURRENCY")
    if raw:
        try:
            parsed = int(raw)
        except ValueError:
            parsed = 0
        if 1 <= parsed <= MAX_ENV_CONCURRENCY:
            return parsed
    return default


async def fetch_concurrently(
    items: Iterable[ItemT],
    *,
    concurrency_limit: int,
    unit_of_work: Callable[[ItemT], Awaitable[Optional[ResultT]]],
    get_id: Callable[[ItemT], str] = str,
) -> FetchResult[ResultT]:
    """Run ``unit_of_work`` per item with at most ``concurrency_limit`` in flight.

    Each item lands exactly once in ``successful`` or ``failed``; a ``None``
    result is treated as "nothing to report" and lands in neither.
    """

    sequence = list(items)
    result: FetchResult[ResultT] = FetchResult()
    if not sequence:
        return result

    semaphore = asyncio.Semaphore(max(1, int(concurrency_limit)))

    async def _guarded(item: ItemT) -> Optional[ResultT]:
        async with semaphore:
            return await unit_of_work(item)

    outcomes = await asyncio.gather(
        *(_guarded(item) for item in sequence),
        return_exceptions=True,
    )

    for item, outcome in zip(sequence, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            item_id = get_id(item)
            logger.warning("fanout.item_failed id=%s error=%s", item_id, outcome)
            result.failed.append(FetchFailure(id=item_id, error=str(outcome) or type(outcome).__name__))
            continue
        if outcome is None:
            continue
        result.successful.append(outcome)

    return result


__all__ = [
    "DEFAULT_CONCURRENCY",
    "FetchFailure",
    "FetchResult",
    "fetch_concurrently",
    "resolve_concurrency",
]
