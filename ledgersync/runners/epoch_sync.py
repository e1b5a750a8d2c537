from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from ledgersync.common.cache import LookupCache
from ledgersync.common.structured_logging import StructuredLogger
from ledgersync.runners.base import LockedJobRunner
from ledgersync.services.epoch_checkpoint import (
    EpochCheckpointOrchestrator,
    EpochSyncResult,
    MissingEpochsResult,
)
from ledgersync.services.job_lock import DistributedJobLock

EPOCH_SYNC_JOB_NAME = "epoch-analytics-sync"


@dataclass
class EpochJobSummary:
    previous: Optional[EpochSyncResult] = None
    backfill: Optional[MissingEpochsResult] = None

    @property
    def items_processed(self) -> int:
        count = 0
        if self.previous is not None:
            count += len(self.previous.steps_run)
        if self.backfill is not None:
            count += len(self.backfill.synced)
        return count

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.previous is not None:
            payload["epoch"] = self.previous.epoch_no
            payload["skipped"] = self.previous.skipped
            payload["steps_run"] = [step.value for step in self.previous.steps_run]
            payload["steps_already_done"] = [step.value for step in self.previous.steps_already_done]
        if self.backfill is not None:
            payload["backfill"] = {
                "current_epoch": self.backfill.current_epoch,
                "total_missing": self.backfill.total_missing,
                "synced": list(self.backfill.synced),
                "failed": [{"id": failure.id, "error": failure.error} for failure in self.backfill.failed],
                "skipped": self.backfill.skipped,
            }
        return payload


class EpochSyncRunner(LockedJobRunner):
    """Sync the last finished epoch and/or catch up on epochs with gaps."""

    def __init__(
        self,
        *,
        orchestrator: EpochCheckpointOrchestrator,
        lock: DistributedJobLock,
        lease_seconds: float,
        sync_previous: bool = True,
        backfill_missing: bool = True,
        renew_lease: bool = True,
        logger: StructuredLogger | logging.Logger | None = None,
    ) -> None:
        if not sync_previous and not backfill_missing:
            raise ValueError("EpochSyncRunner needs at least one of sync_previous/backfill_missing")
        name = "epoch_sync.run" if sync_previous else "epoch_backfill.run"
        super().__init__(
            name=name,
            job_name=EPOCH_SYNC_JOB_NAME,
            lock=lock,
            lease_seconds=lease_seconds,
            renew_lease=renew_lease,
            logger=logger,
        )
        self._orchestrator = orchestrator
        self._sync_previous = sync_previous
        self._backfill_missing = backfill_missing

    async def _run_job(self, cache: LookupCache) -> EpochJobSummary:
        summary = EpochJobSummary()
        if self._sync_previous:
            summary.previous = await self._orchestrator.sync_previous_epoch(cache)
        if self._backfill_missing:
            summary.backfill = await self._orchestrator.backfill_missing_epochs(cache)
        return summary

    def _items_processed(self, result: EpochJobSummary) -> Optional[int]:
        return result.items_processed

    def _start_fields(self) -> dict[str, Any]:
        return {
            **super()._start_fields(),
            "sync_previous": self._sync_previous,
            "backfill_missing": self._backfill_missing,
        }
