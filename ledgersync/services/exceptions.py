"""Domain-specific exceptions for ledgersync services."""

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base exception for service-layer failures."""


# Upstream ledger errors ---------------------------------------------------


class UpstreamError(ServiceError):
    """Base class for failures talking to the upstream ledger API."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Raised for timeouts, transport failures and 5xx responses."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class RateLimitedError(TransientUpstreamError):
    """Raised when the upstream API answers 429."""


class PermanentUpstreamError(UpstreamError):
    """Raised for non-retryable client errors and malformed payloads."""


# Job coordination errors --------------------------------------------------


class JobLockError(ServiceError):
    """Base class for job lease failures."""


class JobAlreadyRunning(JobLockError):
    """Raised when another instance currently holds the job lease."""

    def __init__(self, job_name: str) -> None:
        super().__init__(f"{job_name} is already running")
        self.job_name = job_name


# Sync pipeline errors -----------------------------------------------------


class CheckpointStepError(ServiceError):
    """Raised when one checkpointed epoch step fails."""

    def __init__(self, epoch: int, step: str, cause: BaseException) -> None:
        super().__init__(f"epoch {epoch} step {step} failed: {cause}")
        self.epoch = epoch
        self.step = step


__all__ = [
    "ServiceError",
    "UpstreamError",
    "TransientUpstreamError",
    "RateLimitedError",
    "PermanentUpstreamError",
    "JobLockError",
    "JobAlreadyRunning",
    "CheckpointStepError",
]
