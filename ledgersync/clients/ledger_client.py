"""Async client for the Koios governance ledger API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional, Sequence

import httpx

from ledgersync.common.numeric import to_int
from ledgersync.common.retry import RetryPolicy, retry_with_backoff
from ledgersync.services.exceptions import (
    PermanentUpstreamError,
    RateLimitedError,
    TransientUpstreamError,
)

logger = logging.getLogger(__name__)

DEFAULT_KOIOS_URL = "https://api.koios.rest/api/v1"

DREP_LIST_PAGE_SIZE = 1000
DREP_DELEGATORS_PAGE_SIZE = 1000
POOL_VOTING_POWER_PAGE_SIZE = 1000
ACCOUNT_UPDATE_HISTORY_PAGE_SIZE = 1000
DREP_INFO_BATCH_SIZE = 50
TX_INFO_BATCH_SIZE = 50


def chunked(values: Sequence[Any], size: int) -> list[list[Any]]:
    step = max(1, int(size))
    return [list(values[index:index + step]) for index in range(0, len(values), step)]


def parse_retry_after(value: Optional[str], *, now: datetime | None = None) -> Optional[float]:
    """Interpret a Retry-After header given as seconds or as an HTTP date."""

    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if target is None:
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    return max(0.0, (target - reference).total_seconds())


class BaseLedgerClient:
    """No-op ledger client; subclasses talk to a real upstream."""

    @property
    def remaining_quota(self) -> Optional[int]:
        return None

    async def get_current_epoch(self) -> int:  # pragma: no cover - noop
        logger.debug("ledger.tip.noop")
        return 0

    async def list_drep_ids(self) -> list[str]:  # pragma: no cover - noop
        logger.debug("ledger.drep_list.noop")
        return []

    async def get_drep_info(self, drep_ids: Sequence[str]) -> list[Dict[str, Any]]:  # pragma: no cover - noop
        logger.debug("ledger.drep_info.noop count=%s", len(drep_ids))
        return []

    async def get_drep_delegators(self, drep_id: str) -> list[Dict[str, Any]]:  # pragma: no cover - noop
        logger.debug("ledger.drep_delegators.noop drep_id=%s", drep_id)
        return []

    async def get_epoch_totals(self, epoch: int) -> Optional[Dict[str, Any]]:  # pragma: no cover - noop
        logger.debug("ledger.totals.noop epoch=%s", epoch)
        return None

    async def get_drep_epoch_summary(self, epoch: int) -> Optional[Dict[str, Any]]:  # pragma: no cover - noop
        logger.debug("ledger.drep_epoch_summary.noop epoch=%s", epoch)
        return None

    async def get_pool_voting_power_total(self, epoch: int) -> Optional[int]:  # pragma: no cover - noop
        logger.debug("ledger.pool_voting_power.noop epoch=%s", epoch)
        return None

    async def get_epoch_info(self, epoch: int) -> Optional[Dict[str, Any]]:  # pragma: no cover - noop
        logger.debug("ledger.epoch_info.noop epoch=%s", epoch)
        return None

    async def get_account_update_history(
        self,
        stake_addresses: Sequence[str],
    ) -> list[Dict[str, Any]]:  # pragma: no cover - noop
        logger.debug("ledger.account_update_history.noop count=%s", len(stake_addresses))
        return []

    async def get_tx_info(self, tx_hashes: Sequence[str]) -> list[Dict[str, Any]]:  # pragma: no cover - noop
        logger.debug("ledger.tx_info.noop count=%s", len(tx_hashes))
        return []

    async def aclose(self) -> None:  # pragma: no cover - noop
        return None


@dataclass
class LedgerApiSettings:
    base_url: str = DEFAULT_KOIOS_URL
    api_key: Optional[str] = None
    timeout_seconds: float = 20.0
    quota_header: str = "x-ratelimit-remaining"
    retry: RetryPolicy = RetryPolicy()


class KoiosLedgerClient(BaseLedgerClient):

    def __init__(
        self,
        settings: LedgerApiSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = settings.base_url.rstrip("/")
        self._quota_header = settings.quota_header.lower()
        self._retry = settings.retry
        headers = {"Accept": "application/json"}
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=settings.timeout_seconds,
            transport=transport,
        )
        self._remaining_quota: Optional[int] = None

    @property
    def remaining_quota(self) -> Optional[int]:
        return self._remaining_quota

    async def get_current_epoch(self) -> int:
        rows = await self._request("GET", "/tip")
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise PermanentUpstreamError("tip response did not include an epoch")
        epoch = rows[0].get("epoch_no")
        if not isinstance(epoch, int) or isinstance(epoch, bool):
            raise PermanentUpstreamError(f"tip epoch_no is not an integer: {epoch!r}")
        return epoch

    async def list_drep_ids(self) -> list[str]:
        rows = await self._paginate("GET", "/drep_list", page_size=DREP_LIST_PAGE_SIZE)
        return [row["drep_id"] for row in rows if isinstance(row.get("drep_id"), str) and row["drep_id"]]

    async def get_drep_info(self, drep_ids: Sequence[str]) -> list[Dict[str, Any]]:
        if not drep_ids:
            return []
        rows = await self._request("POST", "/drep_info", json={"_drep_ids": list(drep_ids)})
        return self._rows(rows)

    async def get_drep_delegators(self, drep_id: str) -> list[Dict[str, Any]]:
        return await self._paginate(
            "GET",
            "/drep_delegators",
            params={"_drep_id": drep_id},
            page_size=DREP_DELEGATORS_PAGE_SIZE,
        )

    async def get_epoch_totals(self, epoch: int) -> Optional[Dict[str, Any]]:
        return self._first(await self._request("GET", "/totals", params={"_epoch_no": epoch}))

    async def get_drep_epoch_summary(self, epoch: int) -> Optional[Dict[str, Any]]:
        return self._first(await self._request("GET", "/drep_epoch_summary", params={"_epoch_no": epoch}))

    async def get_pool_voting_power_total(self, epoch: int) -> Optional[int]:
        rows = await self._paginate(
            "GET",
            "/pool_voting_power_history",
            params={"_epoch_no": epoch},
            page_size=POOL_VOTING_POWER_PAGE_SIZE,
        )
        if not rows:
            return None
        total = 0
        for row in rows:
            amount = to_int(row.get("amount"))
            if amount is not None:
                total += amount
        return total

    async def get_epoch_info(self, epoch: int) -> Optional[Dict[str, Any]]:
        return self._first(await self._request("GET", "/epoch_info", params={"_epoch_no": epoch}))

    async def get_account_update_history(self, stake_addresses: Sequence[str]) -> list[Dict[str, Any]]:
        if not stake_addresses:
            return []
        # Paging applies to the combined result set of the whole address batch.
        return await self._paginate(
            "POST",
            "/account_update_history",
            json={"_stake_addresses": list(stake_addresses)},
            page_size=ACCOUNT_UPDATE_HISTORY_PAGE_SIZE,
        )

    async def get_tx_info(self, tx_hashes: Sequence[str]) -> list[Dict[str, Any]]:
        results: list[Dict[str, Any]] = []
        for batch in chunked(list(dict.fromkeys(tx_hashes)), TX_INFO_BATCH_SIZE):
            rows = await self._request(
                "POST",
                "/tx_info",
                json={
                    "_tx_hashes": batch,
                    "_inputs": False,
                    "_metadata": False,
                    "_assets": False,
                    "_withdrawals": False,
                    "_certs": True,
                    "_scripts": False,
                    "_bytecode": False,
                },
            )
            results.extend(self._rows(rows))
        return results

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _paginate(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        page_size: int,
    ) -> list[Dict[str, Any]]:
        collected: list[Dict[str, Any]] = []
        offset = 0
        while True:
            page_params = {**(params or {}), "limit": page_size, "offset": offset}
            page = self._rows(await self._request(method, path, json=json, params=page_params))
            if not page:
                break
            collected.extend(page)
            offset += len(page)
            if len(page) < page_size:
                break
        return collected

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        async def _call() -> Any:
            return await self._send(method, path, json=json, params=params)

        return await retry_with_backoff(_call, self._retry, description=f"{method} {path}")

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            raise TransientUpstreamError(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"{method} {path} transport error: {exc}") from exc

        self._record_quota(response)
        status = response.status_code
        if status == 429:
            raise RateLimitedError(
                f"{method} {path} rate limited",
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        if status >= 500:
            raise TransientUpstreamError(
                f"{method} {path} returned {status}",
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        if status >= 400:
            logger.warning(
                "ledger.request.failed method=%s path=%s status=%s body=%s",
                method,
                path,
                status,
                response.text[:500],
            )
            raise PermanentUpstreamError(f"{method} {path} returned {status}", status_code=status)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentUpstreamError(f"{method} {path} returned malformed JSON") from exc

    def _record_quota(self, response: httpx.Response) -> None:
        raw = response.headers.get(self._quota_header)
        if raw is None:
            return
        try:
            self._remaining_quota = int(float(raw))
        except ValueError:
            logger.debug("ledger.quota.unparseable header=%s value=%s", self._quota_header, raw)

    @staticmethod
    def _rows(payload: Any) -> list[Dict[str, Any]]:
        if isinstance(payload, list):
            return [row for row in payload if isinstance(row, dict)]
        if payload is None:
            return []
        raise PermanentUpstreamError(f"expected a list payload, got {type(payload).__name__}")

    @classmethod
    def _first(cls, payload: Any) -> Optional[Dict[str, Any]]:
        rows = cls._rows(payload)
        return rows[0] if rows else None


__all__ = [
    "BaseLedgerClient",
    "KoiosLedgerClient",
    "LedgerApiSettings",
    "chunked",
    "parse_retry_after",
    "DREP_INFO_BATCH_SIZE",
]
