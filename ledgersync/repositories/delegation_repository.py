from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from ledgersync.clients.database import PostgresClient
from ledgersync.common.datetime import ensure_aware
from ledgersync.common.numeric import to_int
from ledgersync.domain.delegation import BackfillCursor, DelegationChangeEvent, DelegationState


class DelegationRepository:
    """Current delegation state, the append-only change log and backfill bookkeeping."""

    def __init__(self, database_service: PostgresClient) -> None:
        self._database_service = database_service
        self._logger = logging.getLogger(__name__)
        self._ensure_schema()

    # Current state ------------------------------------------------------

    def known_addresses(self) -> set[str]:
        with self._database_service.cursor() as cur:
            cur.execute("SELECT stake_address FROM stake_delegation_state")
            rows = cur.fetchall()
        return {row[0] for row in rows}

    def get_states(self, stake_addresses: Iterable[str]) -> dict[str, DelegationState]:
        addresses = sorted(set(stake_addresses))
        if not addresses:
            return {}
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                SELECT stake_address, drep_id, amount, delegated_epoch, updated_at
                FROM stake_delegation_state
                WHERE stake_address = ANY(%s)
                """,
                (addresses,),
            )
            rows = cur.fetchall()
        return {row[0]: self._row_to_state(row) for row in rows}

    def apply_changes(
        self,
        states: Sequence[DelegationState],
        events: Sequence[DelegationChangeEvent],
        *,
        now: datetime,
    ) -> int:
        """Append ``events`` and upsert ``states`` together; return events inserted."""

        if not states and not events:
            return 0
        with self._database_service.transaction() as cur:
            inserted = self._insert_events(cur, events, ensure_aware(now))
            self._upsert_states(cur, states, ensure_aware(now))
        return inserted

    # Change log ---------------------------------------------------------

    def list_changes(self, stake_address: str) -> list[DelegationChangeEvent]:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                SELECT stake_address, from_drep_id, to_drep_id, delegated_epoch, amount, source_tx_hash
                FROM stake_delegation_change
                WHERE stake_address = %s
                ORDER BY COALESCE(delegated_epoch, -1), id
                """,
                (stake_address,),
            )
            rows = cur.fetchall()
        return [
            DelegationChangeEvent(
                stake_address=row[0],
                from_drep_id=row[1],
                to_drep_id=row[2],
                delegated_epoch=row[3],
                amount=to_int(row[4]),
                source_tx_hash=row[5],
            )
            for row in rows
        ]

    # Backfill cursor ----------------------------------------------------

    def get_cursor(self, job_name: str) -> Optional[BackfillCursor]:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                SELECT job_name, last_stake_address, processed_count, total_count, completed_at, error_message
                FROM backfill_cursor
                WHERE job_name = %s
                """,
                (job_name,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        job, last_address, processed, total, completed_at, error_message = row
        return BackfillCursor(
            job_name=job,
            last_stake_address=last_address,
            processed_count=int(processed or 0),
            total_count=int(total or 0),
            completed_at=ensure_aware(completed_at) if completed_at else None,
            error_message=error_message,
        )

    def save_cursor(self, cursor: BackfillCursor) -> None:
        with self._database_service.cursor() as cur:
            self._upsert_cursor(cur, cursor)

    def record_backfill_progress(
        self,
        cursor: BackfillCursor,
        state: Optional[DelegationState],
        events: Sequence[DelegationChangeEvent],
        *,
        now: datetime,
    ) -> int:
        """Persist one address's replayed history together with the advanced cursor."""

        with self._database_service.transaction() as cur:
            inserted = self._insert_events(cur, events, ensure_aware(now))
            if state is not None:
                self._upsert_states(cur, [state], ensure_aware(now))
            self._upsert_cursor(cur, cursor)
        return inserted

    # Sync bookkeeping ---------------------------------------------------

    def get_last_processed_epoch(self, job_name: str) -> Optional[int]:
        with self._database_service.cursor() as cur:
            cur.execute(
                "SELECT last_processed_epoch FROM delegation_sync_state WHERE job_name = %s",
                (job_name,),
            )
            row = cur.fetchone()
        return row[0] if row else None

    def set_last_processed_epoch(self, job_name: str, epoch_no: int, *, now: datetime) -> None:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                INSERT INTO delegation_sync_state (job_name, last_processed_epoch, last_run_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (job_name) DO UPDATE SET
                    last_processed_epoch = EXCLUDED.last_processed_epoch,
                    last_run_at = EXCLUDED.last_run_at
                """,
                (job_name, epoch_no, ensure_aware(now)),
            )

    # Helpers ------------------------------------------------------------

    @staticmethod
    def _insert_events(cur: Any, events: Sequence[DelegationChangeEvent], now: datetime) -> int:
        if not events:
            return 0
        cur.executemany(
            """
            INSERT INTO stake_delegation_change (
                stake_address,
                from_drep_id,
                to_drep_id,
                delegated_epoch,
                amount,
                source_tx_hash,
                created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            """,
            [
                (
                    event.stake_address,
                    event.from_drep_id,
                    event.to_drep_id,
                    event.delegated_epoch,
                    event.amount,
                    event.source_tx_hash,
                    now,
                )
                for event in events
            ],
        )
        return max(0, cur.rowcount)

    @staticmethod
    def _upsert_states(cur: Any, states: Sequence[DelegationState], now: datetime) -> None:
        if not states:
            return
        cur.executemany(
            """
            INSERT INTO stake_delegation_state (stake_address, drep_id, amount, delegated_epoch, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (stake_address) DO UPDATE SET
                drep_id = EXCLUDED.drep_id,
                amount = COALESCE(EXCLUDED.amount, stake_delegation_state.amount),
                delegated_epoch = COALESCE(EXCLUDED.delegated_epoch, stake_delegation_state.delegated_epoch),
                updated_at = EXCLUDED.updated_at
            """,
            [
                (state.stake_address, state.drep_id, state.amount, state.delegated_epoch, now)
                for state in states
            ],
        )

    @staticmethod
    def _upsert_cursor(cur: Any, cursor: BackfillCursor) -> None:
        cur.execute(
            """
            INSERT INTO backfill_cursor (
                job_name,
                last_stake_address,
                processed_count,
                total_count,
                completed_at,
                error_message,
                updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (job_name) DO UPDATE SET
                last_stake_address = EXCLUDED.last_stake_address,
                processed_count = EXCLUDED.processed_count,
                total_count = EXCLUDED.total_count,
                completed_at = EXCLUDED.completed_at,
                error_message = EXCLUDED.error_message,
                updated_at = NOW()
            """,
            (
                cursor.job_name,
                cursor.last_stake_address,
                cursor.processed_count,
                cursor.total_count,
                cursor.completed_at,
                cursor.error_message,
            ),
        )

    def _ensure_schema(self) -> None:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS stake_delegation_state (
                    stake_address TEXT PRIMARY KEY,
                    drep_id TEXT,
                    amount NUMERIC,
                    delegated_epoch INTEGER,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS stake_delegation_change (
                    id BIGSERIAL PRIMARY KEY,
                    stake_address TEXT NOT NULL,
                    from_drep_id TEXT,
                    to_drep_id TEXT,
                    delegated_epoch INTEGER,
                    amount NUMERIC,
                    source_tx_hash TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            cur.execute("ALTER TABLE stake_delegation_change ADD COLUMN IF NOT EXISTS source_tx_hash TEXT")
            # Superseded by the source-transaction index below.
            cur.execute("DROP INDEX IF EXISTS stake_delegation_change_dedupe_idx")
            cur.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS stake_delegation_change_source_tx_idx
                ON stake_delegation_change (stake_address, source_tx_hash)
                WHERE source_tx_hash IS NOT NULL
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS stake_delegation_change_to_drep_idx
                ON stake_delegation_change (to_drep_id, delegated_epoch)
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS backfill_cursor (
                    job_name TEXT PRIMARY KEY,
                    last_stake_address TEXT,
                    processed_count INTEGER NOT NULL DEFAULT 0,
                    total_count INTEGER NOT NULL DEFAULT 0,
                    completed_at TIMESTAMPTZ,
                    error_message TEXT,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS delegation_sync_state (
                    job_name TEXT PRIMARY KEY,
                    last_processed_epoch INTEGER,
                    last_run_at TIMESTAMPTZ
                )
                """
            )

    @staticmethod
    def _row_to_state(row: Sequence[Any]) -> DelegationState:
        stake_address, drep_id, amount, delegated_epoch, updated_at = row
        return DelegationState(
            stake_address=stake_address,
            drep_id=drep_id,
            amount=to_int(amount),
            delegated_epoch=delegated_epoch,
            updated_at=ensure_aware(updated_at) if updated_at else None,
        )


__all__ = ["DelegationRepository"]
