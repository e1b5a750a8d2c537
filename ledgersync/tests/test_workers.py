from __future__ import annotations

from typing import Any

import pytest

from ledgersync.runners import JobOutcome
from ledgersync.workers import TARGETS, WorkerFailed, _run_targets
from ledgersync.workers import __main__ as worker_main


class _StubRunner:
    def __init__(self, outcome: JobOutcome | None) -> None:
        self.outcome = outcome

    async def execute(self) -> JobOutcome | None:
        return self.outcome


class StubApp:
    instance_id = "worker-test"

    def __init__(self, outcome: JobOutcome | None) -> None:
        self.outcome = outcome
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    def epoch_sync_runner(self, **kwargs: Any) -> _StubRunner:
        self.calls.append(("epoch", kwargs))
        return _StubRunner(self.outcome)

    def delegation_sync_runner(self) -> _StubRunner:
        self.calls.append(("delegation", {}))
        return _StubRunner(self.outcome)

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_targets_pick_runner_modes_and_close_app() -> None:
    app = StubApp(JobOutcome(job_name="job", acquired=True, items_processed=3))

    await _run_targets(app, list(TARGETS))  # type: ignore[arg-type]

    assert app.calls == [
        ("epoch", {"sync_previous": True, "backfill_missing": False}),
        ("epoch", {"sync_previous": False, "backfill_missing": True}),
        ("delegation", {}),
    ]
    assert app.closed


@pytest.mark.asyncio
async def test_busy_job_is_not_a_failure() -> None:
    app = StubApp(JobOutcome(job_name="job", acquired=False))

    await _run_targets(app, ["delegation-sync"])  # type: ignore[arg-type]

    assert app.closed


@pytest.mark.asyncio
async def test_job_error_raises_worker_failed() -> None:
    app = StubApp(JobOutcome(job_name="job", acquired=True, error="koios down"))

    with pytest.raises(WorkerFailed, match="koios down"):
        await _run_targets(app, ["epoch-sync"])  # type: ignore[arg-type]
    assert app.closed


@pytest.mark.asyncio
async def test_unknown_target_is_rejected() -> None:
    app = StubApp(None)

    with pytest.raises(ValueError):
        await _run_targets(app, ["reindex"])  # type: ignore[arg-type]


def test_main_expands_all_and_reports_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[list[str]] = []

    def _fake_run_targets(targets, *, config_path, database_url) -> None:
        seen.append(list(targets))
        raise WorkerFailed("boom")

    monkeypatch.setattr(worker_main, "run_targets", _fake_run_targets)

    assert worker_main.main(["all", "--database-url", "postgresql://x/y"]) == 1
    assert seen == [list(TARGETS)]


def test_main_returns_zero_on_success(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    def _fake_run_targets(targets, **kwargs: Any) -> None:
        calls.append({"targets": list(targets), **kwargs})

    monkeypatch.setattr(worker_main, "run_targets", _fake_run_targets)

    assert worker_main.main(["epoch-backfill", "--config", "cfg.yaml"]) == 0
    assert calls == [{"targets": ["epoch-backfill"], "config_path": "cfg.yaml", "database_url": None}]
