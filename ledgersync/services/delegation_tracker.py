"""Tracks which drep every stake address delegates to.

Current state lives in one row per address; history lives in an append-only
change log. New addresses get their full delegation history replayed once,
known addresses are only diffed against their stored drep.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from ledgersync.clients.ledger_client import BaseLedgerClient, chunked
from ledgersync.common.cache import CURRENT_EPOCH_CACHE_KEY, LookupCache
from ledgersync.common.datetime import utcnow
from ledgersync.common.numeric import to_int
from ledgersync.common.parallel import FetchFailure, fetch_concurrently
from ledgersync.domain.delegation import (
    BackfillCursor,
    DelegationChangeEvent,
    DelegationObservation,
    DelegationState,
    drep_id_from_tx_certificates,
    extract_drep_id,
    is_drep_delegation,
    replay_history,
)
from ledgersync.repositories.delegation_repository import DelegationRepository
from ledgersync.repositories.drep_repository import DrepRepository
from ledgersync.services.drep_inventory import DrepInventoryService

logger = logging.getLogger(__name__)

BACKFILL_JOB_NAME = "drep-delegation-backfill"
SYNC_STATE_JOB_NAME = "drep-delegator-sync"
HISTORY_BATCH_SIZE = 10
WRITE_CHUNK_SIZE = 500


@dataclass
class BackfillOutcome:
    processed: int = 0
    changes_inserted: int = 0
    latest: dict[str, str] = field(default_factory=dict)
    deferred: set[str] = field(default_factory=set)
    completed: bool = False


@dataclass
class DelegationSyncResult:
    current_epoch: int
    dreps_considered: int = 0
    delegators_observed: int = 0
    backfilled_addresses: int = 0
    changes_recorded: int = 0
    states_upserted: int = 0
    deferred: int = 0
    backfill_completed: bool = False
    failed: list[FetchFailure] = field(default_factory=list)

    @property
    def items_processed(self) -> int:
        return self.delegators_observed


class DelegationChangeTracker:
    def __init__(
        self,
        *,
        ledger_client: BaseLedgerClient,
        dreps: DrepRepository,
        delegations: DelegationRepository,
        inventory: DrepInventoryService,
        concurrency: int = 2,
        min_voting_power: int = 1,
        quota_floor: int = 0,
        backfill_job_name: str = BACKFILL_JOB_NAME,
        sync_job_name: str = SYNC_STATE_JOB_NAME,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ledger = ledger_client
        self._dreps = dreps
        self._delegations = delegations
        self._inventory = inventory
        self._concurrency = max(1, concurrency)
        self._min_voting_power = max(0, min_voting_power)
        self._quota_floor = max(0, quota_floor)
        self._backfill_job_name = backfill_job_name
        self._sync_job_name = sync_job_name
        self._clock = clock

    async def sync(self, cache: LookupCache | None = None) -> DelegationSyncResult:
        cache = cache if cache is not None else LookupCache()
        current_epoch = await cache.get_or_load(CURRENT_EPOCH_CACHE_KEY, self._ledger.get_current_epoch)
        result = DelegationSyncResult(current_epoch=current_epoch)

        drep_ids = await asyncio.to_thread(self._dreps.list_ids_with_min_power, self._min_voting_power)
        if not drep_ids:
            logger.info("delegation_sync.inventory_empty refreshing=true")
            await self._inventory.sync_inventory()
            drep_ids = await asyncio.to_thread(self._dreps.list_ids_with_min_power, self._min_voting_power)
        result.dreps_considered = len(drep_ids)

        observations, failed = await self._fan_out(drep_ids)
        result.delegators_observed = len(observations)
        result.failed = failed

        cursor = await asyncio.to_thread(self._delegations.get_cursor, self._backfill_job_name)
        known = await asyncio.to_thread(self._delegations.known_addresses)
        if cursor is None or not cursor.completed:
            backfill = await self._backfill(
                set(observations) | known,
                observations,
                cursor=cursor or BackfillCursor(job_name=self._backfill_job_name),
                known=known,
                may_complete=not failed,
                cache=cache,
            )
        else:
            backfill = await self._backfill(
                set(observations) - known,
                observations,
                cursor=None,
                known=known,
                may_complete=True,
                cache=cache,
            )
        result.backfilled_addresses = backfill.processed
        result.backfill_completed = backfill.completed
        result.deferred = len(backfill.deferred)

        changes, states = await self._apply_diff(observations, backfill, current_epoch)
        result.changes_recorded = backfill.changes_inserted + changes
        result.states_upserted = states

        if not failed and not backfill.deferred:
            await asyncio.to_thread(
                self._delegations.set_last_processed_epoch,
                self._sync_job_name,
                current_epoch,
                now=self._clock(),
            )

        logger.info(
            "delegation_sync.complete epoch=%s dreps=%s delegators=%s backfilled=%s changes=%s states=%s deferred=%s failed=%s",
            current_epoch,
            result.dreps_considered,
            result.delegators_observed,
            result.backfilled_addresses,
            result.changes_recorded,
            result.states_upserted,
            result.deferred,
            len(result.failed),
        )
        return result

    # Fan-out ------------------------------------------------------------

    async def _fan_out(
        self,
        drep_ids: Sequence[str],
    ) -> tuple[dict[str, DelegationObservation], list[FetchFailure]]:
        async def _fetch(drep_id: str) -> tuple[str, list[dict[str, Any]]]:
            return drep_id, await self._ledger.get_drep_delegators(drep_id)

        first = await fetch_concurrently(drep_ids, concurrency_limit=self._concurrency, unit_of_work=_fetch)
        fetched = list(first.successful)
        failed = first.failed
        if failed:
            logger.warning("delegation_sync.fanout.retrying failed=%s", len(failed))
            retry = await fetch_concurrently(
                [failure.id for failure in failed],
                concurrency_limit=1,
                unit_of_work=_fetch,
            )
            fetched.extend(retry.successful)
            failed = retry.failed

        observations: dict[str, DelegationObservation] = {}
        for drep_id, rows in fetched:
            for row in rows:
                observation = self._observation(drep_id, row)
                if observation is None:
                    continue
                previous = observations.get(observation.stake_address)
                if previous is not None and previous.drep_id != drep_id:
                    logger.warning(
                        "delegation_sync.duplicate_address stake=%s first=%s last=%s",
                        observation.stake_address,
                        previous.drep_id,
                        drep_id,
                    )
                observations[observation.stake_address] = observation
        return observations, failed

    @staticmethod
    def _observation(drep_id: str, row: Mapping[str, Any]) -> Optional[DelegationObservation]:
        stake_address = row.get("stake_address")
        amount = to_int(row.get("amount"))
        if not isinstance(stake_address, str) or not stake_address or amount is None:
            return None
        epoch = row.get("epoch_no")
        return DelegationObservation(
            stake_address=stake_address,
            drep_id=drep_id,
            amount=amount,
            epoch_no=epoch if isinstance(epoch, int) and not isinstance(epoch, bool) else None,
        )

    # Backfill -----------------------------------------------------------

    async def _backfill(
        self,
        addresses: Iterable[str],
        observations: Mapping[str, DelegationObservation],
        *,
        cursor: Optional[BackfillCursor],
        known: set[str],
        may_complete: bool,
        cache: LookupCache,
    ) -> BackfillOutcome:
        """Replay delegation history for ``addresses``.

        With a ``cursor`` the run is resumable: each address's writes commit
        together with the advanced cursor. Without one, this is the small
        per-cycle backfill of newly seen addresses.
        """

        outcome = BackfillOutcome()
        if cursor is not None:
            ordered = cursor.remaining(addresses, known)
            cursor.total_count = cursor.processed_count + len(ordered)
            cursor.error_message = None
            await asyncio.to_thread(self._delegations.save_cursor, cursor)
            if ordered:
                logger.info(
                    "delegation_backfill.start job=%s pending=%s resume_after=%s",
                    cursor.job_name,
                    len(ordered),
                    cursor.last_stake_address,
                )
        else:
            ordered = sorted(set(addresses))

        batches = chunked(ordered, HISTORY_BATCH_SIZE)
        try:
            for index, batch in enumerate(batches):
                if self._quota_exhausted():
                    outcome.deferred.update(ordered[index * HISTORY_BATCH_SIZE:])
                    break
                await self._backfill_batch(batch, observations, cursor, outcome, cache)
        except Exception as exc:
            if cursor is not None:
                # The in-memory cursor may be ahead of the last committed address.
                persisted = await asyncio.to_thread(self._delegations.get_cursor, cursor.job_name)
                persisted = persisted or BackfillCursor(job_name=cursor.job_name)
                persisted.error_message = str(exc) or type(exc).__name__
                await asyncio.to_thread(self._delegations.save_cursor, persisted)
            logger.error("delegation_backfill.failed processed=%s error=%s", outcome.processed, exc)
            raise

        if outcome.deferred:
            logger.warning("delegation_backfill.deferred count=%s", len(outcome.deferred))
        elif cursor is not None and may_complete:
            cursor.completed_at = self._clock()
            cursor.last_stake_address = None
            await asyncio.to_thread(self._delegations.save_cursor, cursor)
            outcome.completed = True
            logger.info("delegation_backfill.completed job=%s processed=%s", cursor.job_name, cursor.processed_count)
        elif cursor is None:
            outcome.completed = True
        return outcome

    async def _backfill_batch(
        self,
        batch: Sequence[str],
        observations: Mapping[str, DelegationObservation],
        cursor: Optional[BackfillCursor],
        outcome: BackfillOutcome,
        cache: LookupCache,
    ) -> None:
        rows = await self._ledger.get_account_update_history(batch)
        history: dict[str, list[Mapping[str, Any]]] = defaultdict(list)
        for row in rows:
            stake_address = row.get("stake_address")
            if isinstance(stake_address, str) and stake_address:
                history[stake_address].append(row)

        resolved = await self._resolve_tx_drep_ids(history, cache)

        for stake_address in batch:
            replayed = replay_history(
                stake_address,
                history.get(stake_address, ()),
                tx_drep_ids=resolved.get(stake_address),
            )
            observation = observations.get(stake_address)
            state: Optional[DelegationState] = None
            if replayed.latest_drep_id is not None:
                state = DelegationState(
                    stake_address=stake_address,
                    drep_id=replayed.latest_drep_id,
                    amount=observation.amount if observation is not None else None,
                    delegated_epoch=replayed.latest_epoch,
                )
                outcome.latest[stake_address] = replayed.latest_drep_id

            now = self._clock()
            if cursor is not None:
                cursor.advance(stake_address)
                inserted = await asyncio.to_thread(
                    self._delegations.record_backfill_progress,
                    cursor,
                    state,
                    replayed.changes,
                    now=now,
                )
            else:
                inserted = await asyncio.to_thread(
                    self._delegations.apply_changes,
                    [state] if state is not None else [],
                    replayed.changes,
                    now=now,
                )
            outcome.changes_inserted += inserted
            outcome.processed += 1

    async def _resolve_tx_drep_ids(
        self,
        history: Mapping[str, Sequence[Mapping[str, Any]]],
        cache: LookupCache,
    ) -> dict[str, dict[str, str]]:
        """Look up drep ids for delegation entries whose payload omits them."""

        wanted: dict[str, set[str]] = defaultdict(set)
        for stake_address, entries in history.items():
            for entry in entries:
                tx_hash = entry.get("tx_hash")
                if not is_drep_delegation(entry) or extract_drep_id(entry) is not None:
                    continue
                if isinstance(tx_hash, str) and tx_hash and ("tx_drep", stake_address, tx_hash) not in cache:
                    wanted[tx_hash].add(stake_address)

        if wanted:
            transactions = await self._ledger.get_tx_info(sorted(wanted))
            by_hash = {tx.get("tx_hash"): tx for tx in transactions if isinstance(tx.get("tx_hash"), str)}
            for tx_hash, stake_addresses in wanted.items():
                tx = by_hash.get(tx_hash)
                for stake_address in stake_addresses:
                    drep_id = drep_id_from_tx_certificates(tx, stake_address) if tx is not None else None
                    cache.store(("tx_drep", stake_address, tx_hash), drep_id)

        resolved: dict[str, dict[str, str]] = defaultdict(dict)
        for stake_address, entries in history.items():
            for entry in entries:
                tx_hash = entry.get("tx_hash")
                if not isinstance(tx_hash, str):
                    continue
                drep_id = cache.peek(("tx_drep", stake_address, tx_hash))
                if drep_id:
                    resolved[stake_address][tx_hash] = drep_id
        return resolved

    def _quota_exhausted(self) -> bool:
        remaining = self._ledger.remaining_quota
        if remaining is None or remaining > self._quota_floor:
            return False
        logger.warning("delegation_backfill.quota_floor_reached remaining=%s floor=%s", remaining, self._quota_floor)
        return True

    # Diff ---------------------------------------------------------------

    async def _apply_diff(
        self,
        observations: Mapping[str, DelegationObservation],
        backfill: BackfillOutcome,
        current_epoch: int,
    ) -> tuple[int, int]:
        candidates = [
            observation
            for address, observation in sorted(observations.items())
            if address not in backfill.deferred
        ]
        stored = await asyncio.to_thread(
            self._delegations.get_states,
            [observation.stake_address for observation in candidates],
        )
        fallback_epoch = max(0, current_epoch - 1)

        pending: list[tuple[DelegationState, Optional[DelegationChangeEvent]]] = []
        for observation in candidates:
            address = observation.stake_address
            epoch = observation.epoch_no if observation.epoch_no is not None else fallback_epoch
            next_state = DelegationState(
                stake_address=address,
                drep_id=observation.drep_id,
                amount=observation.amount,
                delegated_epoch=epoch,
            )
            prior = stored.get(address)
            prior_drep = prior.drep_id if prior is not None else None
            if prior_drep != observation.drep_id:
                event: Optional[DelegationChangeEvent] = None
                if backfill.latest.get(address) != observation.drep_id:
                    event = DelegationChangeEvent(
                        stake_address=address,
                        from_drep_id=prior_drep,
                        to_drep_id=observation.drep_id,
                        delegated_epoch=epoch,
                        amount=observation.amount,
                    )
                pending.append((next_state, event))
            elif prior is not None and (prior.amount != observation.amount or prior.delegated_epoch != epoch):
                pending.append((next_state, None))

        changes = 0
        for chunk in chunked(pending, WRITE_CHUNK_SIZE):
            states = [state for state, _ in chunk]
            events = [event for _, event in chunk if event is not None]
            changes += await asyncio.to_thread(
                self._delegations.apply_changes,
                states,
                events,
                now=self._clock(),
            )
        return changes, len(pending)


__all__ = [
    "BACKFILL_JOB_NAME",
    "DelegationChangeTracker",
    "DelegationSyncResult",
    "SYNC_STATE_JOB_NAME",
]
