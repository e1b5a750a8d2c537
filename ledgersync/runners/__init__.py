from .base import InstrumentedRunner, JobOutcome, LockedJobRunner
from .delegation_sync import DELEGATION_SYNC_JOB_NAME, DelegationSyncRunner
from .epoch_sync import EPOCH_SYNC_JOB_NAME, EpochJobSummary, EpochSyncRunner

__all__ = [
    "DELEGATION_SYNC_JOB_NAME",
    "DelegationSyncRunner",
    "EPOCH_SYNC_JOB_NAME",
    "EpochJobSummary",
    "EpochSyncRunner",
    "InstrumentedRunner",
    "JobOutcome",
    "LockedJobRunner",
]
