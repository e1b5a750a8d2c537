from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from ledgersync.clients.ledger_client import (
    DREP_LIST_PAGE_SIZE,
    KoiosLedgerClient,
    LedgerApiSettings,
    parse_retry_after,
)
from ledgersync.common.retry import RetryPolicy
from ledgersync.services.exceptions import PermanentUpstreamError, TransientUpstreamError

NO_WAIT = RetryPolicy(max_attempts=4, base_delay=0, max_delay=0)


def _client(handler, **settings) -> KoiosLedgerClient:
    return KoiosLedgerClient(
        LedgerApiSettings(base_url="https://koios.test/api/v1", retry=NO_WAIT, **settings),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_tip_returns_epoch_and_sends_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"epoch_no": 512, "abs_slot": 1}])

    client = _client(handler, api_key="secret-token")
    try:
        assert await client.get_current_epoch() == 512
    finally:
        await client.aclose()

    assert seen[0].url.path == "/api/v1/tip"
    assert seen[0].headers["authorization"] == "Bearer secret-token"


@pytest.mark.asyncio
async def test_client_error_is_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(400, text="bad epoch")

    client = _client(handler)
    try:
        with pytest.raises(PermanentUpstreamError) as excinfo:
            await client.get_epoch_totals(12)
    finally:
        await client.aclose()

    assert calls == 1
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_rate_limit_is_retried_and_quota_header_tracked() -> None:
    responses = [
        httpx.Response(429, headers={"Retry-After": "0", "x-ratelimit-remaining": "7"}),
        httpx.Response(200, json=[{"epoch_no": 12, "circulation": "1"}], headers={"x-ratelimit-remaining": "6"}),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    client = _client(handler)
    try:
        totals = await client.get_epoch_totals(12)
    finally:
        await client.aclose()

    assert totals == {"epoch_no": 12, "circulation": "1"}
    assert client.remaining_quota == 6


@pytest.mark.asyncio
async def test_server_errors_exhaust_attempts() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    client = _client(handler)
    try:
        with pytest.raises(TransientUpstreamError):
            await client.get_epoch_info(7)
    finally:
        await client.aclose()

    assert calls == 4


@pytest.mark.asyncio
async def test_malformed_json_is_permanent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>oops</html>")

    client = _client(handler)
    try:
        with pytest.raises(PermanentUpstreamError):
            await client.get_drep_epoch_summary(3)
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_drep_list_follows_offset_pages() -> None:
    offsets: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["offset"])
        offsets.append(offset)
        size = DREP_LIST_PAGE_SIZE if offset == 0 else 2
        return httpx.Response(200, json=[{"drep_id": f"drep1{offset + index:05d}"} for index in range(size)])

    client = _client(handler)
    try:
        drep_ids = await client.list_drep_ids()
    finally:
        await client.aclose()

    assert offsets == [0, DREP_LIST_PAGE_SIZE]
    assert len(drep_ids) == DREP_LIST_PAGE_SIZE + 2


@pytest.mark.asyncio
async def test_pool_voting_power_sums_amounts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["_epoch_no"] == "530"
        return httpx.Response(200, json=[{"amount": "100"}, {"amount": "250"}, {"amount": None}])

    client = _client(handler)
    try:
        assert await client.get_pool_voting_power_total(530) == 350
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_tx_info_deduplicates_hashes_and_requests_certificates() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        bodies.append(body)
        return httpx.Response(200, json=[{"tx_hash": tx_hash} for tx_hash in body["_tx_hashes"]])

    client = _client(handler)
    try:
        rows = await client.get_tx_info(["a", "b", "a"])
    finally:
        await client.aclose()

    assert [row["tx_hash"] for row in rows] == ["a", "b"]
    assert bodies[0]["_certs"] is True


def test_parse_retry_after_accepts_seconds_and_dates() -> None:
    now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    assert parse_retry_after("11") == 11.0
    assert parse_retry_after("Wed, 01 Jan 2025 12:00:30 GMT", now=now) == 30.0
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None
