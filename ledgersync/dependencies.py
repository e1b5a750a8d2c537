from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from fastapi import Depends

from ledgersync.common.server_context import ServerContext
from ledgersync.common.structured_logging import StructuredLogger
from ledgersync.runners import DelegationSyncRunner, EpochSyncRunner
from ledgersync.services.job_lock import DistributedJobLock


class RunnerFactory(Protocol):
    def epoch_sync_runner(self, *, sync_previous: bool = True, backfill_missing: bool = True) -> EpochSyncRunner: ...

    def delegation_sync_runner(self) -> DelegationSyncRunner: ...


@dataclass
class DependencyRegistry:
    server_context: Optional[ServerContext] = None
    job_lock: Optional[DistributedJobLock] = None
    runner_factory: Optional[RunnerFactory] = None


_registry = DependencyRegistry()


def _require(attribute: str, message: str) -> object:
    value = getattr(_registry, attribute)
    if value is None:
        raise RuntimeError(message)
    return value


def set_dependencies(
    *,
    server_context: Optional[ServerContext] = None,
    job_lock: Optional[DistributedJobLock] = None,
    runner_factory: Optional[RunnerFactory] = None,
) -> None:
    """Set the global dependencies that route handlers resolve through ``Depends``."""
    if server_context is not None:
        _registry.server_context = server_context
    if job_lock is not None:
        _registry.job_lock = job_lock
    if runner_factory is not None:
        _registry.runner_factory = runner_factory


def get_server_context() -> ServerContext:
    return _require("server_context", "ServerContext not initialized")  # type: ignore[return-value]


def get_structured_logger(
    ctx: ServerContext = Depends(get_server_context),
) -> StructuredLogger:
    return ctx.logger


def get_job_lock() -> DistributedJobLock:
    return _require("job_lock", "DistributedJobLock not initialized")  # type: ignore[return-value]


def get_runner_factory() -> RunnerFactory:
    return _require("runner_factory", "Runner factory not initialized")  # type: ignore[return-value]
