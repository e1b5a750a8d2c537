from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ledgersync.clients.ledger_client import DREP_INFO_BATCH_SIZE, BaseLedgerClient, chunked
from ledgersync.common.numeric import to_int
from ledgersync.common.parallel import DEFAULT_CONCURRENCY, FetchFailure, fetch_concurrently
from ledgersync.domain.epoch import DrepRecord
from ledgersync.repositories.drep_repository import DrepRepository

logger = logging.getLogger(__name__)


@dataclass
class InventorySyncResult:
    listed: int = 0
    inserted: int = 0
    info_refreshed: int = 0
    failed_batches: list[FetchFailure] = field(default_factory=list)


def drep_record_from_info(row: Mapping[str, Any]) -> Optional[DrepRecord]:
    drep_id = row.get("drep_id")
    if not isinstance(drep_id, str) or not drep_id:
        return None
    expires = row.get("expires_epoch_no")
    return DrepRecord(
        drep_id=drep_id,
        voting_power=to_int(row.get("amount")),
        registered=row.get("registered") if isinstance(row.get("registered"), bool) else None,
        active=row.get("active") if isinstance(row.get("active"), bool) else None,
        expires_epoch_no=expires if isinstance(expires, int) and not isinstance(expires, bool) else None,
        meta_url=row.get("meta_url") or None,
        meta_hash=row.get("meta_hash") or None,
    )


class DrepInventoryService:
    """Keeps the full drep inventory in sync, not just dreps that have voted."""

    def __init__(
        self,
        *,
        ledger_client: BaseLedgerClient,
        repository: DrepRepository,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self._ledger = ledger_client
        self._repository = repository
        self._concurrency = max(1, concurrency)

    async def sync_inventory(self) -> InventorySyncResult:
        """Insert newly listed dreps, then refresh info for every listed drep.

        Stored voting power decides which dreps the delegation fan-out visits,
        so existing rows are refreshed too; dreps usually register with no power.
        """

        drep_ids = await self._ledger.list_drep_ids()
        inserted = await asyncio.to_thread(self._repository.insert_missing, drep_ids)
        result = InventorySyncResult(listed=len(drep_ids), inserted=len(inserted))

        batches = chunked(sorted(set(drep_ids)), DREP_INFO_BATCH_SIZE)

        async def _refresh(batch: list[str]) -> int:
            rows = await self._ledger.get_drep_info(batch)
            records = [record for record in map(drep_record_from_info, rows) if record is not None]
            return await asyncio.to_thread(self._repository.update_info, records)

        outcome = await fetch_concurrently(
            batches,
            concurrency_limit=self._concurrency,
            unit_of_work=_refresh,
            get_id=lambda batch: f"{batch[0]}..{batch[-1]}",
        )
        result.info_refreshed = sum(outcome.successful)
        result.failed_batches = outcome.failed
        logger.info(
            "drep_inventory.sync listed=%s inserted=%s refreshed=%s failed_batches=%s",
            result.listed,
            result.inserted,
            result.info_refreshed,
            len(result.failed_batches),
        )
        return result


__all__ = ["DrepInventoryService", "InventorySyncResult", "drep_record_from_info"]
