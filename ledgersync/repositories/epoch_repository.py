from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from psycopg import sql

from ledgersync.clients.database import PostgresClient
from ledgersync.common.datetime import ensure_aware
from ledgersync.common.numeric import to_int
from ledgersync.domain.epoch import EpochSyncCheckpoint, EpochTotals, SyncStep


class EpochRepository:
    """Per-epoch checkpoints and the totals they gate."""

    def __init__(self, database_service: PostgresClient) -> None:
        self._database_service = database_service
        self._logger = logging.getLogger(__name__)
        self._ensure_schema()

    def ensure_checkpoint(self, epoch_no: int) -> EpochSyncCheckpoint:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                INSERT INTO epoch_analytics_sync (epoch_no)
                VALUES (%s)
                ON CONFLICT (epoch_no) DO NOTHING
                """,
                (epoch_no,),
            )
        checkpoint = self.get_checkpoint(epoch_no)
        if checkpoint is None:
            raise RuntimeError(f"checkpoint row for epoch {epoch_no} missing after insert")
        return checkpoint

    def get_checkpoint(self, epoch_no: int) -> Optional[EpochSyncCheckpoint]:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                SELECT epoch_no, dreps_synced_at, totals_synced_at, delegators_synced_at, updated_at
                FROM epoch_analytics_sync
                WHERE epoch_no = %s
                """,
                (epoch_no,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return self._row_to_checkpoint(row)

    def mark_step(self, epoch_no: int, step: SyncStep, synced_at: datetime) -> None:
        with self._database_service.cursor() as cur:
            self._mark_step(cur, epoch_no, step, ensure_aware(synced_at))

    def save_totals(self, totals: EpochTotals, synced_at: datetime) -> None:
        """Upsert ``totals`` and stamp the totals checkpoint in one transaction."""

        synced_at = ensure_aware(synced_at)
        with self._database_service.transaction() as cur:
            cur.execute(
                """
                INSERT INTO epoch_totals (
                    epoch_no,
                    circulation,
                    treasury,
                    reward,
                    supply,
                    reserves,
                    delegated_drep_power,
                    total_pool_vote_power,
                    start_time,
                    end_time,
                    block_count,
                    tx_count,
                    updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (epoch_no) DO UPDATE SET
                    circulation = EXCLUDED.circulation,
                    treasury = EXCLUDED.treasury,
                    reward = EXCLUDED.reward,
                    supply = EXCLUDED.supply,
                    reserves = EXCLUDED.reserves,
                    delegated_drep_power = EXCLUDED.delegated_drep_power,
                    total_pool_vote_power = EXCLUDED.total_pool_vote_power,
                    start_time = EXCLUDED.start_time,
                    end_time = EXCLUDED.end_time,
                    block_count = EXCLUDED.block_count,
                    tx_count = EXCLUDED.tx_count,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    totals.epoch_no,
                    totals.circulation,
                    totals.treasury,
                    totals.reward,
                    totals.supply,
                    totals.reserves,
                    totals.delegated_drep_power,
                    totals.total_pool_vote_power,
                    totals.start_time,
                    totals.end_time,
                    totals.block_count,
                    totals.tx_count,
                    synced_at,
                ),
            )
            self._mark_step(cur, totals.epoch_no, SyncStep.TOTALS, synced_at)

    def get_totals(self, epoch_no: int) -> Optional[EpochTotals]:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                SELECT
                    epoch_no,
                    circulation,
                    treasury,
                    reward,
                    supply,
                    reserves,
                    delegated_drep_power,
                    total_pool_vote_power,
                    start_time,
                    end_time,
                    block_count,
                    tx_count
                FROM epoch_totals
                WHERE epoch_no = %s
                """,
                (epoch_no,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        (
            epoch,
            circulation,
            treasury,
            reward,
            supply,
            reserves,
            delegated,
            pool_power,
            start_time,
            end_time,
            block_count,
            tx_count,
        ) = row
        return EpochTotals(
            epoch_no=epoch,
            circulation=to_int(circulation),
            treasury=to_int(treasury),
            reward=to_int(reward),
            supply=to_int(supply),
            reserves=to_int(reserves),
            delegated_drep_power=to_int(delegated),
            total_pool_vote_power=to_int(pool_power),
            start_time=ensure_aware(start_time) if start_time else None,
            end_time=ensure_aware(end_time) if end_time else None,
            block_count=block_count,
            tx_count=tx_count,
        )

    def find_incomplete_epochs(self, current_epoch: int) -> list[int]:
        """Epochs in ``[0, current_epoch - 1]`` lacking totals or a totals checkpoint."""

        if current_epoch <= 0:
            return []
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                SELECT s.epoch_no
                FROM generate_series(0, %s) AS s(epoch_no)
                LEFT JOIN epoch_totals t ON t.epoch_no = s.epoch_no
                LEFT JOIN epoch_analytics_sync c ON c.epoch_no = s.epoch_no
                WHERE t.epoch_no IS NULL OR c.totals_synced_at IS NULL
                ORDER BY s.epoch_no
                """,
                (current_epoch - 1,),
            )
            rows = cur.fetchall()
        return [int(row[0]) for row in rows]

    def _mark_step(self, cur: Any, epoch_no: int, step: SyncStep, synced_at: datetime) -> None:
        column = sql.Identifier(f"{step.value}_synced_at")
        cur.execute(
            sql.SQL(
                """
                INSERT INTO epoch_analytics_sync (epoch_no, {column}, updated_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (epoch_no) DO UPDATE SET
                    {column} = COALESCE(epoch_analytics_sync.{column}, EXCLUDED.{column}),
                    updated_at = EXCLUDED.updated_at
                """
            ).format(column=column),
            (epoch_no, synced_at, synced_at),
        )

    def _ensure_schema(self) -> None:
        with self._database_service.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS epoch_analytics_sync (
                    epoch_no INTEGER PRIMARY KEY,
                    dreps_synced_at TIMESTAMPTZ,
                    totals_synced_at TIMESTAMPTZ,
                    delegators_synced_at TIMESTAMPTZ,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS epoch_totals (
                    epoch_no INTEGER PRIMARY KEY,
                    circulation NUMERIC,
                    treasury NUMERIC,
                    reward NUMERIC,
                    supply NUMERIC,
                    reserves NUMERIC,
                    delegated_drep_power NUMERIC,
                    total_pool_vote_power NUMERIC,
                    start_time TIMESTAMPTZ,
                    end_time TIMESTAMPTZ,
                    block_count INTEGER,
                    tx_count BIGINT,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )

    @staticmethod
    def _row_to_checkpoint(row: Sequence[Any]) -> EpochSyncCheckpoint:
        epoch_no, dreps_at, totals_at, delegators_at, updated_at = row
        return EpochSyncCheckpoint(
            epoch_no=epoch_no,
            dreps_synced_at=ensure_aware(dreps_at) if dreps_at else None,
            totals_synced_at=ensure_aware(totals_at) if totals_at else None,
            delegators_synced_at=ensure_aware(delegators_at) if delegators_at else None,
            updated_at=ensure_aware(updated_at) if updated_at else None,
        )


__all__ = ["EpochRepository"]
