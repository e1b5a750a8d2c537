from __future__ import annotations

import logging
from typing import Iterable, Sequence

from ledgersync.clients.database import PostgresClient
from ledgersync.domain.epoch import DrepRecord


class DrepRepository:
    """Inventory of every registered drep, voted or not."""

    def __init__(self, database_service: PostgresClient) -> None:
        self._database_service = database_service
        self._logger = logging.getLogger(__name__)
        self._ensure_schema()

    def insert_missing(self, drep_ids: Iterable[str]) -> list[str]:
        """Insert unknown ids, skipping duplicates; return the ids that were new."""

        unique = sorted({drep_id for drep_id in drep_ids if drep_id})
        if not unique:
            return []
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                INSERT INTO dreps (drep_id)
                SELECT UNNEST(%s::text[])
                ON CONFLICT (drep_id) DO NOTHING
                RETURNING drep_id
                """,
                (unique,),
            )
            rows = cur.fetchall()
        return sorted(row[0] for row in rows)

    def update_info(self, records: Sequence[DrepRecord]) -> int:
        if not records:
            return 0
        payload = [
            (
                record.voting_power,
                record.registered,
                record.active,
                record.expires_epoch_no,
                record.meta_url,
                record.meta_hash,
                record.drep_id,
            )
            for record in records
        ]
        with self._database_service.transaction() as cur:
            cur.executemany(
                """
                UPDATE dreps SET
                    voting_power = COALESCE(%s, voting_power),
                    registered = COALESCE(%s, registered),
                    active = COALESCE(%s, active),
                    expires_epoch_no = COALESCE(%s, expires_epoch_no),
                    meta_url = COALESCE(%s, meta_url),
                    meta_hash = COALESCE(%s, meta_hash),
                    updated_at = NOW()
                WHERE drep_id = %s
                """,
                payload,
            )
        return len(payload)

    def list_ids_with_min_power(self, min_voting_power: int) -> list[str]:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                SELECT drep_id
                FROM dreps
                WHERE voting_power IS NOT NULL AND voting_power >= %s
                ORDER BY drep_id
                """,
                (min_voting_power,),
            )
            rows = cur.fetchall()
        return [row[0] for row in rows]

    def count(self) -> int:
        with self._database_service.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM dreps")
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def _ensure_schema(self) -> None:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS dreps (
                    drep_id TEXT PRIMARY KEY,
                    voting_power NUMERIC,
                    registered BOOLEAN,
                    active BOOLEAN,
                    expires_epoch_no INTEGER,
                    meta_url TEXT,
                    meta_hash TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )


__all__ = ["DrepRepository"]
