from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from ledgersync.common.cache import LookupCache
from ledgersync.common.structured_logging import StructuredLogger
from ledgersync.domain.epoch import STEP_ORDER, DrepRecord, SyncStep
from ledgersync.domain.job_lock import JobResult
from ledgersync.runners import (
    DELEGATION_SYNC_JOB_NAME,
    EPOCH_SYNC_JOB_NAME,
    DelegationSyncRunner,
    EpochSyncRunner,
    LockedJobRunner,
)
from ledgersync.services.delegation_tracker import DelegationChangeTracker
from ledgersync.services.drep_inventory import DrepInventoryService
from ledgersync.services.epoch_checkpoint import EpochCheckpointOrchestrator
from ledgersync.services.job_lock import DistributedJobLock
from ledgersync.tests.fakes import (
    InMemoryDelegationRepository,
    InMemoryDrepRepository,
    InMemoryEpochRepository,
    InMemoryJobLockRepository,
    StubLedgerClient,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


class RecordingLogger(StructuredLogger):
    def __init__(self) -> None:
        super().__init__(name="ledgersync.tests")
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def _emit(self, level: int, event: str, **fields: Any) -> None:
        self.events.append((str(level), event, fields))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


class _ScriptedRunner(LockedJobRunner):
    def __init__(self, job, **kwargs: Any) -> None:
        super().__init__(name="scripted.run", job_name="scripted-job", **kwargs)
        self._job = job

    async def _run_job(self, cache: LookupCache) -> Any:
        return await self._job()

    def _items_processed(self, result: Any) -> int:
        return len(result)


def _lock(repository: InMemoryJobLockRepository, instance_id: str = "api-1") -> DistributedJobLock:
    return DistributedJobLock(repository, instance_id=instance_id, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_job_result_is_recorded_on_release() -> None:
    repository = InMemoryJobLockRepository()
    logger = RecordingLogger()

    async def _job() -> list[str]:
        return ["a", "b"]

    runner = _ScriptedRunner(_job, lock=_lock(repository), lease_seconds=60, renew_lease=False, logger=logger)
    outcome = await runner.execute()

    assert outcome is not None and outcome.succeeded
    assert outcome.items_processed == 2
    row = repository.rows["scripted-job"]
    assert not row.is_running
    assert row.last_result is JobResult.SUCCESS
    assert row.items_processed == 2
    assert logger.names() == ["scripted.run.start", "scripted.run.complete"]


@pytest.mark.asyncio
async def test_job_exception_releases_lease_as_failed() -> None:
    repository = InMemoryJobLockRepository()
    lock = _lock(repository)
    logger = RecordingLogger()

    async def _job() -> list[str]:
        raise RuntimeError("koios down")

    outcome = await _ScriptedRunner(
        _job, lock=lock, lease_seconds=60, renew_lease=False, logger=logger
    ).execute()

    assert outcome is not None
    assert outcome.acquired and not outcome.succeeded
    assert outcome.error == "koios down"
    row = repository.rows["scripted-job"]
    assert not row.is_running
    assert row.last_result is JobResult.FAILED
    assert row.error_message == "koios down"
    assert not lock.is_held_locally("scripted-job")
    assert "scripted.run.job_failed" in logger.names()

    # The lease is free again for the next attempt.
    assert await lock.try_acquire("scripted-job", 60)


@pytest.mark.asyncio
async def test_busy_job_is_skipped_without_running() -> None:
    repository = InMemoryJobLockRepository()
    repository.try_acquire("scripted-job", now=NOW, lease=timedelta(minutes=15), instance_id="api-2")
    ran: list[bool] = []

    async def _job() -> list[str]:
        ran.append(True)
        return []

    outcome = await _ScriptedRunner(_job, lock=_lock(repository), lease_seconds=60, renew_lease=False).execute()

    assert outcome is not None
    assert outcome.acquired is False
    assert ran == []
    assert repository.rows["scripted-job"].locked_by == "api-2"


class _RenewSpyLock(DistributedJobLock):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.renewed = asyncio.Event()

    async def renew(self, job_name: str, lease_seconds: float) -> bool:
        result = await super().renew(job_name, lease_seconds)
        self.renewed.set()
        return result


@pytest.mark.asyncio
async def test_heartbeat_renews_lease_while_job_runs() -> None:
    repository = InMemoryJobLockRepository()
    lock = _RenewSpyLock(repository, instance_id="api-1", clock=lambda: NOW)

    async def _job() -> list[str]:
        await asyncio.wait_for(lock.renewed.wait(), timeout=5)
        return ["done"]

    outcome = await _ScriptedRunner(_job, lock=lock, lease_seconds=1, renew_lease=True).execute()

    assert outcome is not None and outcome.succeeded
    assert repository.rows["scripted-job"].last_result is JobResult.SUCCESS


@pytest.mark.asyncio
async def test_epoch_sync_runner_summarizes_previous_epoch() -> None:
    ledger = StubLedgerClient(current_epoch=500)
    epochs = InMemoryEpochRepository()
    inventory = DrepInventoryService(ledger_client=ledger, repository=InMemoryDrepRepository())
    orchestrator = EpochCheckpointOrchestrator(
        ledger_client=ledger,
        epochs=epochs,
        inventory=inventory,
        clock=lambda: NOW,
    )
    repository = InMemoryJobLockRepository()
    runner = EpochSyncRunner(
        orchestrator=orchestrator,
        lock=_lock(repository),
        lease_seconds=60,
        backfill_missing=False,
        renew_lease=False,
    )

    outcome = await runner.execute()

    assert runner.name == "epoch_sync.run"
    assert outcome is not None and outcome.succeeded
    assert outcome.job_name == EPOCH_SYNC_JOB_NAME
    # Without a delegation snapshot hook the delegators step is not run.
    expected = [step for step in STEP_ORDER if step is not SyncStep.DELEGATORS]
    assert outcome.items_processed == len(expected)
    summary = outcome.result.as_dict()
    assert summary["epoch"] == 499
    assert summary["steps_run"] == [step.value for step in expected]
    assert "backfill" not in summary


def test_epoch_sync_runner_needs_a_mode() -> None:
    with pytest.raises(ValueError):
        EpochSyncRunner(
            orchestrator=object(),  # type: ignore[arg-type]
            lock=_lock(InMemoryJobLockRepository()),
            lease_seconds=60,
            sync_previous=False,
            backfill_missing=False,
        )


@pytest.mark.asyncio
async def test_delegation_sync_runner_reports_observed_delegators() -> None:
    ledger = StubLedgerClient(
        delegators={"drep1alice": [{"stake_address": "stake1a", "amount": "10"}]},
    )
    dreps = InMemoryDrepRepository([DrepRecord(drep_id="drep1alice", voting_power=10)])
    tracker = DelegationChangeTracker(
        ledger_client=ledger,
        dreps=dreps,
        delegations=InMemoryDelegationRepository(),
        inventory=DrepInventoryService(ledger_client=ledger, repository=dreps),
        clock=lambda: NOW,
    )
    repository = InMemoryJobLockRepository()

    outcome = await DelegationSyncRunner(
        tracker=tracker,
        lock=_lock(repository),
        lease_seconds=60,
        renew_lease=False,
    ).execute()

    assert outcome is not None and outcome.succeeded
    assert outcome.items_processed == 1
    assert repository.rows[DELEGATION_SYNC_JOB_NAME].last_result is JobResult.SUCCESS
