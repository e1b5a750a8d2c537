from __future__ import annotations

import logging
from typing import Any, Optional

from ledgersync.common.cache import LookupCache
from ledgersync.common.structured_logging import StructuredLogger
from ledgersync.runners.base import LockedJobRunner
from ledgersync.services.delegation_tracker import (
    SYNC_STATE_JOB_NAME,
    DelegationChangeTracker,
    DelegationSyncResult,
)
from ledgersync.services.job_lock import DistributedJobLock

DELEGATION_SYNC_JOB_NAME = SYNC_STATE_JOB_NAME


def delegation_summary(result: DelegationSyncResult) -> dict[str, Any]:
    return {
        "epoch": result.current_epoch,
        "dreps_considered": result.dreps_considered,
        "delegators_observed": result.delegators_observed,
        "backfilled_addresses": result.backfilled_addresses,
        "changes_recorded": result.changes_recorded,
        "states_upserted": result.states_upserted,
        "deferred": result.deferred,
        "backfill_completed": result.backfill_completed,
        "failed": [{"id": failure.id, "error": failure.error} for failure in result.failed],
    }


class DelegationSyncRunner(LockedJobRunner):
    """One delegation tracking cycle under the ``drep-delegator-sync`` lease."""

    def __init__(
        self,
        *,
        tracker: DelegationChangeTracker,
        lock: DistributedJobLock,
        lease_seconds: float,
        renew_lease: bool = True,
        logger: StructuredLogger | logging.Logger | None = None,
    ) -> None:
        super().__init__(
            name="delegation_sync.run",
            job_name=DELEGATION_SYNC_JOB_NAME,
            lock=lock,
            lease_seconds=lease_seconds,
            renew_lease=renew_lease,
            logger=logger,
        )
        self._tracker = tracker

    async def _run_job(self, cache: LookupCache) -> DelegationSyncResult:
        return await self._tracker.sync(cache)

    def _items_processed(self, result: DelegationSyncResult) -> Optional[int]:
        return result.items_processed
