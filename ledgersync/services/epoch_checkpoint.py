"""Exactly-once, resumable synchronization of per-epoch aggregates."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from ledgersync.clients.ledger_client import BaseLedgerClient
from ledgersync.common.cache import CURRENT_EPOCH_CACHE_KEY, LookupCache
from ledgersync.common.datetime import from_unix_seconds, utcnow
from ledgersync.common.numeric import to_int
from ledgersync.common.parallel import FetchFailure, fetch_concurrently
from ledgersync.domain.epoch import STEP_ORDER, EpochTotals, SyncStep
from ledgersync.repositories.epoch_repository import EpochRepository
from ledgersync.services.drep_inventory import DrepInventoryService, InventorySyncResult
from ledgersync.services.exceptions import CheckpointStepError

logger = logging.getLogger(__name__)

DelegationStep = Callable[[], Awaitable[Any]]


@dataclass
class EpochSyncResult:
    epoch_no: int
    skipped: bool = False
    steps_run: list[SyncStep] = field(default_factory=list)
    steps_already_done: list[SyncStep] = field(default_factory=list)
    inventory: Optional[InventorySyncResult] = None
    totals: Optional[EpochTotals] = None


@dataclass
class MissingEpochsResult:
    current_epoch: int
    total_missing: int = 0
    synced: list[int] = field(default_factory=list)
    failed: list[FetchFailure] = field(default_factory=list)
    skipped: int = 0


class EpochCheckpointOrchestrator:
    """Runs the per-epoch steps (dreps, totals, delegators) at most once each.

    Every step is gated by its ``*_synced_at`` field. A failing step leaves
    its field unset and raises :class:`CheckpointStepError`, so the next
    invocation redoes only that step and the ones after it.
    """

    def __init__(
        self,
        *,
        ledger_client: BaseLedgerClient,
        epochs: EpochRepository,
        inventory: DrepInventoryService,
        delegation_step: DelegationStep | None = None,
        quota_floor: int = 0,
        backfill_concurrency: int = 2,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self._ledger = ledger_client
        self._epochs = epochs
        self._inventory = inventory
        self._delegation_step = delegation_step
        self._quota_floor = max(0, quota_floor)
        self._backfill_concurrency = max(1, backfill_concurrency)
        self._clock = clock

    async def current_epoch(self, cache: LookupCache | None = None) -> int:
        if cache is None:
            return await self._ledger.get_current_epoch()
        return await cache.get_or_load(CURRENT_EPOCH_CACHE_KEY, self._ledger.get_current_epoch)

    async def sync_previous_epoch(self, cache: LookupCache | None = None) -> EpochSyncResult:
        current = await self.current_epoch(cache)
        return await self.sync_epoch(current - 1, current_epoch=current)

    async def sync_epoch(
        self,
        epoch_no: int,
        *,
        current_epoch: int,
        steps: Iterable[SyncStep] = STEP_ORDER,
    ) -> EpochSyncResult:
        result = EpochSyncResult(epoch_no=epoch_no)
        if epoch_no < 0 or epoch_no >= current_epoch:
            logger.info("epoch_sync.skip epoch=%s current_epoch=%s", epoch_no, current_epoch)
            result.skipped = True
            return result

        wanted = set(steps)
        checkpoint = await asyncio.to_thread(self._epochs.ensure_checkpoint, epoch_no)
        for step in STEP_ORDER:
            if step not in wanted:
                continue
            if step is SyncStep.DELEGATORS and self._delegation_step is None:
                continue
            if checkpoint.is_done(step):
                result.steps_already_done.append(step)
                continue
            try:
                await self._run_step(step, epoch_no, result)
            except Exception as exc:
                logger.error("epoch_sync.step.failed epoch=%s step=%s error=%s", epoch_no, step.value, exc)
                raise CheckpointStepError(epoch_no, step.value, exc) from exc
            result.steps_run.append(step)
            logger.info("epoch_sync.step.complete epoch=%s step=%s", epoch_no, step.value)
        return result

    async def backfill_missing_epochs(self, cache: LookupCache | None = None) -> MissingEpochsResult:
        current = await self.current_epoch(cache)
        missing = await asyncio.to_thread(self._epochs.find_incomplete_epochs, current)
        result = MissingEpochsResult(current_epoch=current, total_missing=len(missing))
        if not missing:
            logger.info("epoch_backfill.none_missing current_epoch=%s", current)
            return result

        async def _sync(epoch_no: int) -> tuple[str, int]:
            if self._quota_exhausted():
                return ("skipped", epoch_no)
            await self.sync_epoch(epoch_no, current_epoch=current, steps=(SyncStep.TOTALS,))
            return ("synced", epoch_no)

        outcome = await fetch_concurrently(
            missing,
            concurrency_limit=self._backfill_concurrency,
            unit_of_work=_sync,
            get_id=str,
        )
        for status, epoch_no in outcome.successful:
            if status == "synced":
                result.synced.append(epoch_no)
            else:
                result.skipped += 1
        result.synced.sort()
        result.failed = outcome.failed
        logger.info(
            "epoch_backfill.complete current_epoch=%s missing=%s synced=%s failed=%s skipped=%s",
            current,
            result.total_missing,
            len(result.synced),
            len(result.failed),
            result.skipped,
        )
        return result

    def _quota_exhausted(self) -> bool:
        remaining = self._ledger.remaining_quota
        if remaining is None or remaining > self._quota_floor:
            return False
        logger.warning("epoch_backfill.quota_floor_reached remaining=%s floor=%s", remaining, self._quota_floor)
        return True

    async def _run_step(self, step: SyncStep, epoch_no: int, result: EpochSyncResult) -> None:
        if step is SyncStep.DREPS:
            result.inventory = await self._inventory.sync_inventory()
            await asyncio.to_thread(self._epochs.mark_step, epoch_no, step, self._clock())
        elif step is SyncStep.TOTALS:
            totals = await self.collect_totals(epoch_no)
            await asyncio.to_thread(self._epochs.save_totals, totals, self._clock())
            result.totals = totals
        elif step is SyncStep.DELEGATORS:
            if self._delegation_step is None:
                raise RuntimeError("no delegation snapshot hook configured")
            await self._delegation_step()
            await asyncio.to_thread(self._epochs.mark_step, epoch_no, step, self._clock())

    async def collect_totals(self, epoch_no: int) -> EpochTotals:
        totals_row = await self._ledger.get_epoch_totals(epoch_no) or {}
        summary_row = await self._ledger.get_drep_epoch_summary(epoch_no) or {}
        pool_power = await self._ledger.get_pool_voting_power_total(epoch_no)
        info_row = await self._ledger.get_epoch_info(epoch_no) or {}
        if not totals_row:
            logger.warning("epoch_sync.totals.missing epoch=%s", epoch_no)

        return EpochTotals(
            epoch_no=epoch_no,
            circulation=to_int(totals_row.get("circulation")),
            treasury=to_int(totals_row.get("treasury")),
            reward=to_int(totals_row.get("reward")),
            supply=to_int(totals_row.get("supply")),
            reserves=to_int(totals_row.get("reserves")),
            delegated_drep_power=to_int(summary_row.get("amount")),
            total_pool_vote_power=pool_power,
            start_time=from_unix_seconds(info_row.get("start_time")),
            end_time=from_unix_seconds(info_row.get("end_time")),
            block_count=to_int(info_row.get("blk_count")),
            tx_count=to_int(info_row.get("tx_count")),
        )


__all__ = [
    "EpochCheckpointOrchestrator",
    "EpochSyncResult",
    "MissingEpochsResult",
]
