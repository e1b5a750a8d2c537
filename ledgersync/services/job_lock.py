"""Lease-based mutual exclusion for periodic jobs across service instances."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from psycopg import Error as DatabaseError

from ledgersync.common.datetime import utcnow
from ledgersync.domain.job_lock import JobLockState, JobResult
from ledgersync.repositories.job_lock_repository import JobLockRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class DistributedJobLock:
    """Acquire/release named job leases stored in the shared database.

    The store row is the only cross-instance guard. ``_held`` just lets an
    instance skip a round trip for a job it is already running itself.
    """

    def __init__(
        self,
        repository: JobLockRepository,
        *,
        instance_id: str,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._instance_id = instance_id
        self._clock = clock
        self._held: set[str] = set()

    @property
    def instance_id(self) -> str:
        return self._instance_id

    def is_held_locally(self, job_name: str) -> bool:
        return job_name in self._held

    async def try_acquire(self, job_name: str, lease_seconds: float) -> bool:
        if job_name in self._held:
            logger.info("job_lock.acquire.local_skip job=%s", job_name)
            return False
        acquired = await asyncio.to_thread(
            self._repository.try_acquire,
            job_name,
            now=self._clock(),
            lease=timedelta(seconds=lease_seconds),
            instance_id=self._instance_id,
        )
        if acquired:
            self._held.add(job_name)
        logger.info(
            "job_lock.acquire job=%s acquired=%s instance=%s lease_seconds=%s",
            job_name,
            acquired,
            self._instance_id,
            lease_seconds,
        )
        return acquired

    async def renew(self, job_name: str, lease_seconds: float) -> bool:
        renewed = await asyncio.to_thread(
            self._repository.renew,
            job_name,
            now=self._clock(),
            lease=timedelta(seconds=lease_seconds),
            instance_id=self._instance_id,
        )
        if not renewed:
            logger.warning("job_lock.renew.lost job=%s instance=%s", job_name, self._instance_id)
        return renewed

    async def release(
        self,
        job_name: str,
        result: JobResult,
        *,
        items_processed: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Record the outcome and free the lease.

        A store failure here is logged and swallowed: the lease then simply
        expires, which is the recovery path for crashed holders anyway. When
        another instance has reclaimed the lease in the meantime its row is
        left untouched.
        """

        self._held.discard(job_name)
        try:
            released = await asyncio.to_thread(
                self._repository.release,
                job_name,
                now=self._clock(),
                result=result,
                instance_id=self._instance_id,
                items_processed=items_processed,
                error_message=error_message,
            )
        except DatabaseError as exc:
            logger.error("job_lock.release.failed job=%s error=%s", job_name, exc)
            return
        if not released:
            logger.warning(
                "job_lock.release.not_holder job=%s instance=%s result=%s",
                job_name,
                self._instance_id,
                result.value,
            )
            return
        logger.info(
            "job_lock.release job=%s result=%s items=%s",
            job_name,
            result.value,
            items_processed,
        )

    async def status(self, job_name: str) -> Optional[JobLockState]:
        return await asyncio.to_thread(self._repository.get, job_name)


__all__ = ["DistributedJobLock"]
