from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class SyncStep(str, Enum):
    DREPS = "dreps"
    TOTALS = "totals"
    DELEGATORS = "delegators"


STEP_ORDER: tuple[SyncStep, ...] = (SyncStep.DREPS, SyncStep.TOTALS, SyncStep.DELEGATORS)


@dataclass
class EpochSyncCheckpoint:
    epoch_no: int
    dreps_synced_at: Optional[datetime] = None
    totals_synced_at: Optional[datetime] = None
    delegators_synced_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def synced_at(self, step: SyncStep) -> Optional[datetime]:
        return getattr(self, f"{step.value}_synced_at")

    def is_done(self, step: SyncStep) -> bool:
        return self.synced_at(step) is not None


@dataclass
class EpochTotals:
    epoch_no: int
    circulation: Optional[int] = None
    treasury: Optional[int] = None
    reward: Optional[int] = None
    supply: Optional[int] = None
    reserves: Optional[int] = None
    delegated_drep_power: Optional[int] = None
    total_pool_vote_power: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    block_count: Optional[int] = None
    tx_count: Optional[int] = None


@dataclass
class DrepRecord:
    drep_id: str
    voting_power: Optional[int] = None
    registered: Optional[bool] = None
    active: Optional[bool] = None
    expires_epoch_no: Optional[int] = None
    meta_url: Optional[str] = None
    meta_hash: Optional[str] = None


__all__ = [
    "DrepRecord",
    "EpochSyncCheckpoint",
    "EpochTotals",
    "STEP_ORDER",
    "SyncStep",
]
