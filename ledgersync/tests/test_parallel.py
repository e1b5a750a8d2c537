from __future__ import annotations

import asyncio

import pytest

from ledgersync.common.parallel import fetch_concurrently, resolve_concurrency


@pytest.mark.asyncio
async def test_fetch_concurrently_bounds_in_flight_work() -> None:
    in_flight = 0
    peak = 0
    seen: list[int] = []

    async def _work(item: int) -> int:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        try:
            await asyncio.sleep(0.001 * (item % 3))
            seen.append(item)
            if item % 4 == 0:
                raise ValueError(f"item {item} failed")
            return item * 10
        finally:
            in_flight -= 1

    result = await fetch_concurrently(range(23), concurrency_limit=5, unit_of_work=_work)

    assert peak <= 5
    assert sorted(seen) == list(range(23))
    failed_ids = sorted(int(failure.id) for failure in result.failed)
    assert failed_ids == [0, 4, 8, 12, 16, 20]
    assert sorted(result.successful) == [item * 10 for item in range(23) if item % 4 != 0]
    assert len(result.successful) + len(result.failed) == 23
    assert all("failed" in failure.error for failure in result.failed)


@pytest.mark.asyncio
async def test_none_results_are_neither_success_nor_failure() -> None:
    async def _work(item: str) -> str | None:
        return None if item == "skip" else item.upper()

    result = await fetch_concurrently(["a", "skip", "b"], concurrency_limit=2, unit_of_work=_work)

    assert result.successful == ["A", "B"]
    assert result.failed == []


@pytest.mark.asyncio
async def test_custom_ids_label_failures() -> None:
    async def _work(batch: list[str]) -> int:
        raise RuntimeError("")

    result = await fetch_concurrently(
        [["x", "y"]],
        concurrency_limit=1,
        unit_of_work=_work,
        get_id=lambda batch: f"{batch[0]}..{batch[-1]}",
    )

    assert result.failed[0].id == "x..y"
    assert result.failed[0].error == "RuntimeError"


@pytest.mark.asyncio
async def test_empty_input_returns_empty_result() -> None:
    async def _work(item: int) -> int:  # pragma: no cover - never called
        return item

    result = await fetch_concurrently([], concurrency_limit=3, unit_of_work=_work)

    assert result.successful == []
    assert result.failed == []


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 5), ("8", 8), ("20", 20), ("21", 5), ("0", 5), ("many", 5)],
)
def test_resolve_concurrency(raw: str | None, expected: int) -> None:
    env = {} if raw is None else {"VOTER_SYNC_CONCURRENCY": raw}
    assert resolve_concurrency(env) == expected
