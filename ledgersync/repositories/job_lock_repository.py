from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from psycopg import errors as pg_errors

from ledgersync.clients.database import PostgresClient
from ledgersync.common.datetime import ensure_aware
from ledgersync.domain.job_lock import JobLockState, JobResult

_SELECT_COLUMNS = """
    SELECT
        job_name,
        is_running,
        started_at,
        completed_at,
        expires_at,
        locked_by,
        last_result,
        error_message,
        items_processed
    FROM sync_status
"""


class JobLockRepository:
    """Lease rows for named jobs, one per job name."""

    def __init__(self, database_service: PostgresClient) -> None:
        self._database_service = database_service
        self._logger = logging.getLogger(__name__)
        self._ensure_schema()

    def try_acquire(self, job_name: str, *, now: datetime, lease: timedelta, instance_id: str) -> bool:
        now = ensure_aware(now)
        try:
            with self._database_service.transaction(serializable=True) as cur:
                cur.execute(
                    "INSERT INTO sync_status (job_name) VALUES (%s) ON CONFLICT (job_name) DO NOTHING",
                    (job_name,),
                )
                cur.execute(f"{_SELECT_COLUMNS} WHERE job_name = %s FOR UPDATE", (job_name,))
                current = self._row_to_state(cur.fetchone())
                reclaimed = current.reclaimed(now)
                if reclaimed is not current:
                    self._logger.warning(
                        "job_lock.reclaimed job=%s previous_holder=%s expired_at=%s",
                        job_name,
                        current.locked_by,
                        current.expires_at,
                    )
                if reclaimed.is_running:
                    return False
                self._write_state(cur, reclaimed.claimed(now, lease, instance_id), now)
                return True
        except pg_errors.SerializationFailure:
            self._logger.info("job_lock.acquire.serialization_conflict job=%s", job_name)
            return False

    def renew(self, job_name: str, *, now: datetime, lease: timedelta, instance_id: str) -> bool:
        now = ensure_aware(now)
        with self._database_service.transaction() as cur:
            cur.execute(f"{_SELECT_COLUMNS} WHERE job_name = %s FOR UPDATE", (job_name,))
            row = cur.fetchone()
            if row is None:
                return False
            renewed = self._row_to_state(row).renewed(now, lease, instance_id)
            if renewed is None:
                return False
            self._write_state(cur, renewed, now)
            return True

    def release(
        self,
        job_name: str,
        *,
        now: datetime,
        result: JobResult,
        instance_id: str,
        items_processed: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Record the outcome; a row now held by another instance is left alone."""

        now = ensure_aware(now)
        with self._database_service.transaction() as cur:
            cur.execute(f"{_SELECT_COLUMNS} WHERE job_name = %s FOR UPDATE", (job_name,))
            row = cur.fetchone()
            current = self._row_to_state(row) if row is not None else JobLockState(job_name=job_name)
            released = current.released(
                now,
                result,
                instance_id,
                items_processed=items_processed,
                error_message=error_message,
            )
            if released is None:
                return False
            self._write_state(cur, released, now)
            return True

    def get(self, job_name: str) -> Optional[JobLockState]:
        with self._database_service.cursor() as cur:
            cur.execute(f"{_SELECT_COLUMNS} WHERE job_name = %s", (job_name,))
            row = cur.fetchone()
        if row is None:
            return None
        return self._row_to_state(row)

    def _write_state(self, cur: Any, state: JobLockState, now: datetime) -> None:
        cur.execute(
            """
            UPDATE sync_status SET
                is_running = %s,
                started_at = %s,
                completed_at = %s,
                expires_at = %s,
                locked_by = %s,
                last_result = %s,
                error_message = %s,
                items_processed = %s,
                updated_at = %s
            WHERE job_name = %s
            """,
            (
                state.is_running,
                state.started_at,
                state.completed_at,
                state.expires_at,
                state.locked_by,
                state.last_result.value if state.last_result is not None else None,
                state.error_message,
                state.items_processed,
                now,
                state.job_name,
            ),
        )

    def _ensure_schema(self) -> None:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_status (
                    job_name TEXT PRIMARY KEY,
                    is_running BOOLEAN NOT NULL DEFAULT FALSE,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    expires_at TIMESTAMPTZ,
                    locked_by TEXT,
                    last_result TEXT,
                    error_message TEXT,
                    items_processed INTEGER,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )

    @staticmethod
    def _row_to_state(row: Sequence[Any]) -> JobLockState:
        (
            job_name,
            is_running,
            started_at,
            completed_at,
            expires_at,
            locked_by,
            last_result,
            error_message,
            items_processed,
        ) = row
        return JobLockState(
            job_name=job_name,
            is_running=bool(is_running),
            started_at=ensure_aware(started_at) if started_at else None,
            completed_at=ensure_aware(completed_at) if completed_at else None,
            expires_at=ensure_aware(expires_at) if expires_at else None,
            locked_by=locked_by,
            last_result=JobResult(last_result) if last_result else None,
            error_message=error_message,
            items_processed=items_processed,
        )


__all__ = ["JobLockRepository"]
