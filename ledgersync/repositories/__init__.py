from __future__ import annotations

from .delegation_repository import DelegationRepository
from .drep_repository import DrepRepository
from .epoch_repository import EpochRepository
from .job_lock_repository import JobLockRepository

__all__ = [
    "DelegationRepository",
    "DrepRepository",
    "EpochRepository",
    "JobLockRepository",
]
