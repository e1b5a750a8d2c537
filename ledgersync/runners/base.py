from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from psycopg import Error as DatabaseError

from ledgersync.common.cache import LookupCache
from ledgersync.common.structured_logging import StructuredLogger
from ledgersync.domain.job_lock import JobResult
from ledgersync.services.job_lock import DistributedJobLock

ResultT = TypeVar("ResultT")


class InstrumentedRunner(Generic[ResultT]):
    """Shared runner plumbing to log lifecycle and duration."""

    def __init__(self, *, name: str, logger: StructuredLogger | logging.Logger | None = None) -> None:
        self._name = name
        self._logger: StructuredLogger | logging.Logger = logger if logger is not None else logging.getLogger(__name__)

    @property
    def name(self) -> str:
        return self._name

    async def execute(self) -> ResultT | None:
        start_fields = {**self._start_fields()}
        started_at = time.monotonic()
        self._log("info", f"{self._name}.start", **start_fields)

        try:
            result = await self._run()
        except Exception as exc:
            error_fields = self._error_fields(exc, start_fields)
            error_fields.setdefault("duration_ms", self._duration_ms(started_at))
            self._log("error", f"{self._name}.failed", **error_fields)
            return None

        complete_fields = self._complete_fields(result, start_fields)
        complete_fields.setdefault("duration_ms", self._duration_ms(started_at))
        level = self._complete_level(result, start_fields)
        self._log(level, f"{self._name}.complete", **complete_fields)
        return result

    async def _run(self) -> ResultT | None:
        raise NotImplementedError

    def _start_fields(self) -> dict[str, Any]:
        return {}

    def _complete_fields(self, result: ResultT | None, start_fields: dict[str, Any]) -> dict[str, Any]:
        status = "success" if result is not None else "skipped"
        return {**start_fields, "status": status}

    def _complete_level(self, result: ResultT | None, start_fields: dict[str, Any]) -> str:  # noqa: ARG002
        return "info"

    def _error_fields(self, exc: Exception, start_fields: dict[str, Any]) -> dict[str, Any]:  # noqa: ARG002
        return {**start_fields, "error": str(exc)}

    def _duration_ms(self, started_at: float) -> int:
        return int((time.monotonic() - started_at) * 1000)

    def _log(self, level: str, event: str, **fields: Any) -> None:
        logger = self._logger
        if isinstance(logger, StructuredLogger):
            log_method = getattr(logger, level)
            log_method(event, **fields)
            return

        log_method = getattr(logger, level)
        if fields:
            log_method("%s %s", event, fields)
        else:
            log_method(event)


@dataclass
class JobOutcome:
    job_name: str
    acquired: bool
    result: Any = None
    items_processed: Optional[int] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.acquired and self.error is None


class LockedJobRunner(InstrumentedRunner[JobOutcome]):
    """Acquire the job lease, run the job, and always release the lease.

    While the job runs a heartbeat task renews the lease every third of its
    duration. A job exception is recorded in the outcome and in the lock
    row rather than raised, so callers only have to look at ``JobOutcome``.
    """

    def __init__(
        self,
        *,
        name: str,
        job_name: str,
        lock: DistributedJobLock,
        lease_seconds: float,
        renew_lease: bool = True,
        logger: StructuredLogger | logging.Logger | None = None,
    ) -> None:
        super().__init__(name=name, logger=logger)
        self._job_name = job_name
        self._lock = lock
        self._lease_seconds = lease_seconds
        self._renew_lease = renew_lease

    @property
    def job_name(self) -> str:
        return self._job_name

    async def _run(self) -> JobOutcome:
        acquired = await self._lock.try_acquire(self._job_name, self._lease_seconds)
        if not acquired:
            self._log("info", f"{self._name}.already_running", job=self._job_name)
            return JobOutcome(job_name=self._job_name, acquired=False)

        heartbeat = asyncio.create_task(self._heartbeat()) if self._renew_lease else None
        cache = LookupCache()
        outcome = JobOutcome(job_name=self._job_name, acquired=True, error="job interrupted")
        try:
            result = await self._run_job(cache)
            outcome.result = result
            outcome.items_processed = self._items_processed(result)
            outcome.error = None
        except Exception as exc:
            outcome.error = str(exc) or exc.__class__.__name__
            self._log("error", f"{self._name}.job_failed", job=self._job_name, error=outcome.error)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
            await self._lock.release(
                self._job_name,
                JobResult.SUCCESS if outcome.error is None else JobResult.FAILED,
                items_processed=outcome.items_processed,
                error_message=outcome.error,
            )
        return outcome

    async def _run_job(self, cache: LookupCache) -> Any:
        raise NotImplementedError

    def _items_processed(self, result: Any) -> Optional[int]:  # noqa: ARG002
        return None

    def _start_fields(self) -> dict[str, Any]:
        return {"job": self._job_name, "instance": self._lock.instance_id}

    def _complete_fields(self, outcome: JobOutcome | None, start_fields: dict[str, Any]) -> dict[str, Any]:
        if outcome is None:
            return {**start_fields, "status": "failed"}
        if not outcome.acquired:
            return {**start_fields, "status": "skipped"}
        return {
            **start_fields,
            "status": "success" if outcome.succeeded else "failed",
            "items_processed": outcome.items_processed,
            "error": outcome.error,
        }

    def _complete_level(self, outcome: JobOutcome | None, start_fields: dict[str, Any]) -> str:  # noqa: ARG002
        if outcome is None or (outcome.acquired and not outcome.succeeded):
            return "error"
        return "info"

    async def _heartbeat(self) -> None:
        interval = max(self._lease_seconds / 3.0, 1.0)
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self._lock.renew(self._job_name, self._lease_seconds)
            except DatabaseError as exc:
                self._log("warning", f"{self._name}.renew_failed", job=self._job_name, error=str(exc))
                continue
            if not renewed:
                self._log("warning", f"{self._name}.lease_lost", job=self._job_name)
                return


__all__ = ["InstrumentedRunner", "JobOutcome", "LockedJobRunner"]
