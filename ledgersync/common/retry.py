"""Bounded exponential-backoff retry for outbound ledger calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ledgersync.services.exceptions import TransientUpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 2.0
    max_delay: float = 8.0
    max_retry_after: float = 300.0

    def normalized(self) -> "RetryPolicy":
        attempts = max(1, int(self.max_attempts))
        base = max(0.0, float(self.base_delay))
        ceiling = max(base, float(self.max_delay))
        hint_ceiling = max(ceiling, float(self.max_retry_after))
        return RetryPolicy(
            max_attempts=attempts,
            base_delay=base,
            max_delay=ceiling,
            max_retry_after=hint_ceiling,
        )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait after the zero-based ``attempt`` failed.

        A server Retry-After hint replaces the computed delay but never
        exceeds ``max_retry_after``.
        """

        if retry_after is not None and retry_after >= 0:
            return min(float(retry_after), self.max_retry_after)
        return min(self.base_delay * (2 ** attempt), self.max_delay)


async def retry_with_backoff(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    description: str = "upstream.call",
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Run ``call`` retrying transient upstream failures.

    Only :class:`TransientUpstreamError` (timeouts, 5xx, 429) is retried.
    Everything else, including permanent 4xx errors, propagates on the
    first failure.
    """

    resolved = (policy or RetryPolicy()).normalized()
    attempt = 0
    while True:
        try:
            return await call()
        except TransientUpstreamError as exc:
            if attempt + 1 >= resolved.max_attempts:
                logger.warning(
                    "retry.exhausted call=%s attempts=%s error=%s",
                    description,
                    attempt + 1,
                    exc,
                )
                raise
            delay = resolved.delay_for(attempt, exc.retry_after)
            if exc.retry_after is not None and exc.retry_after > delay:
                logger.warning(
                    "retry.retry_after_clamped call=%s requested=%.2f delay=%.2f",
                    description,
                    exc.retry_after,
                    delay,
                )
            logger.info(
                "retry.scheduled call=%s attempt=%s delay=%.2f status=%s error=%s",
                description,
                attempt + 1,
                delay,
                exc.status_code,
                exc,
            )
            await sleep(delay)
            attempt += 1


__all__ = ["RetryPolicy", "retry_with_backoff"]
