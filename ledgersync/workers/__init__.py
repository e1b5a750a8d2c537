"""Run ledger sync jobs on demand (cron, k8s CronJob, manual)."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Sequence

from ledgersync.runners import JobOutcome
from ledgersync.server import LedgerSync

RunnerTarget = str
WORKER_LOGGER = logging.getLogger("ledgersync.workers")
TARGETS = ("epoch-sync", "epoch-backfill", "delegation-sync")


class WorkerFailed(RuntimeError):
    """A target ran but reported a failure."""


def _report(target: str, outcome: JobOutcome | None) -> None:
    if outcome is None:
        raise WorkerFailed(f"{target} crashed before reporting an outcome")
    if not outcome.acquired:
        WORKER_LOGGER.info("worker.%s.complete result=skipped reason=already_running", target)
        return
    if outcome.error is not None:
        raise WorkerFailed(f"{target} failed: {outcome.error}")
    WORKER_LOGGER.info("worker.%s.complete result=success items=%s", target, outcome.items_processed)


async def _run_epoch_sync(app: LedgerSync) -> None:
    WORKER_LOGGER.info("worker.epoch-sync.start instance=%s", app.instance_id)
    runner = app.epoch_sync_runner(sync_previous=True, backfill_missing=False)
    _report("epoch-sync", await runner.execute())


async def _run_epoch_backfill(app: LedgerSync) -> None:
    WORKER_LOGGER.info("worker.epoch-backfill.start instance=%s", app.instance_id)
    runner = app.epoch_sync_runner(sync_previous=False, backfill_missing=True)
    _report("epoch-backfill", await runner.execute())


async def _run_delegation_sync(app: LedgerSync) -> None:
    WORKER_LOGGER.info("worker.delegation-sync.start instance=%s", app.instance_id)
    runner = app.delegation_sync_runner()
    _report("delegation-sync", await runner.execute())


async def _run_targets(app: LedgerSync, targets: Sequence[RunnerTarget]) -> None:
    try:
        for target in targets:
            normalized = target.strip().lower()
            if normalized == "epoch-sync":
                await _run_epoch_sync(app)
            elif normalized == "epoch-backfill":
                await _run_epoch_backfill(app)
            elif normalized == "delegation-sync":
                await _run_delegation_sync(app)
            else:
                raise ValueError(f"Unknown runner target: {target}")
    finally:
        await app.aclose()


def run_targets(
    targets: Iterable[RunnerTarget],
    *,
    config_path: str | None = None,
    database_url: str | None = None,
) -> None:
    sequence = list(targets)
    if not sequence:
        raise ValueError("At least one runner target must be provided")

    app = LedgerSync(config_path=config_path, database_url=database_url)
    WORKER_LOGGER.info("worker.sequence.start targets=%s", ",".join(sequence))
    asyncio.run(_run_targets(app, sequence))
    WORKER_LOGGER.info("worker.sequence.complete targets=%s", ",".join(sequence))


__all__ = ["TARGETS", "WorkerFailed", "run_targets", "RunnerTarget"]
