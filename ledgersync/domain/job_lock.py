"""Lease state for named jobs and its pure transitions."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

EXPIRED_LOCK_MESSAGE = "Lock expired - previous run may have crashed"


class JobResult(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class JobLockState:
    job_name: str
    is_running: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    last_result: Optional[JobResult] = None
    error_message: Optional[str] = None
    items_processed: Optional[int] = None

    def is_expired(self, now: datetime) -> bool:
        return self.is_running and self.expires_at is not None and self.expires_at < now

    def reclaimed(self, now: datetime) -> "JobLockState":
        """Reset an expired lease; other states are returned unchanged."""

        if not self.is_expired(now):
            return self
        return replace(
            self,
            is_running=False,
            last_result=JobResult.EXPIRED,
            error_message=EXPIRED_LOCK_MESSAGE,
        )

    def claimed(self, now: datetime, lease: timedelta, instance_id: str) -> "JobLockState":
        return replace(
            self,
            is_running=True,
            started_at=now,
            expires_at=now + lease,
            locked_by=instance_id,
            error_message=None,
        )

    def released(
        self,
        now: datetime,
        result: JobResult,
        instance_id: str,
        *,
        items_processed: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> Optional["JobLockState"]:
        """Record the outcome when ``instance_id`` is the last holder of the lease."""

        if self.locked_by != instance_id:
            return None
        return replace(
            self,
            is_running=False,
            completed_at=now,
            expires_at=None,
            last_result=result,
            items_processed=items_processed,
            error_message=error_message,
        )

    def renewed(self, now: datetime, lease: timedelta, instance_id: str) -> Optional["JobLockState"]:
        """Extend the lease when ``instance_id`` still holds it."""

        if not self.is_running or self.locked_by != instance_id or self.is_expired(now):
            return None
        return replace(self, expires_at=now + lease)


__all__ = ["EXPIRED_LOCK_MESSAGE", "JobLockState", "JobResult"]
