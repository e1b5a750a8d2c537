from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from psycopg import Error as DatabaseError

from ledgersync.common.structured_logging import StructuredLogger
from ledgersync.dependencies import RunnerFactory, get_job_lock, get_runner_factory, get_structured_logger
from ledgersync.routes.error_mapping import conflict_response, job_failed_response
from ledgersync.runners import DelegationSyncRunner, EpochJobSummary, JobOutcome, LockedJobRunner
from ledgersync.runners.delegation_sync import delegation_summary
from ledgersync.services.job_lock import DistributedJobLock

logger = logging.getLogger("ledgersync.routes.admin")


class SyncStatusResponse(BaseModel):
    job_name: str
    is_running: bool
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    last_result: Optional[str] = None
    error_message: Optional[str] = None
    items_processed: Optional[int] = None


async def _trigger(runner: LockedJobRunner) -> JSONResponse:
    outcome: JobOutcome | None = await runner.execute()
    if outcome is None:
        return job_failed_response(runner.job_name, "runner crashed before reporting an outcome")
    if not outcome.acquired:
        return conflict_response(runner.job_name)
    if outcome.error is not None:
        return job_failed_response(runner.job_name, outcome.error)

    payload: dict[str, Any] = {
        "success": True,
        "job": runner.job_name,
        "items_processed": outcome.items_processed,
    }
    result = outcome.result
    if isinstance(result, EpochJobSummary):
        payload.update(result.as_dict())
    elif isinstance(runner, DelegationSyncRunner) and result is not None:
        payload.update(delegation_summary(result))
    return JSONResponse(status_code=status.HTTP_200_OK, content=payload)


def create_admin_router() -> APIRouter:
    router = APIRouter(prefix="/data")

    @router.post("/trigger-epoch-sync")
    async def trigger_epoch_sync(
        backfill: bool = True,
        factory: RunnerFactory = Depends(get_runner_factory),
        structured_logger: StructuredLogger = Depends(get_structured_logger),
    ) -> JSONResponse:
        runner = factory.epoch_sync_runner(sync_previous=True, backfill_missing=backfill)
        structured_logger.info("admin.trigger_epoch_sync", job=runner.job_name, backfill=backfill)
        return await _trigger(runner)

    @router.post("/trigger-delegation-sync")
    async def trigger_delegation_sync(
        factory: RunnerFactory = Depends(get_runner_factory),
        structured_logger: StructuredLogger = Depends(get_structured_logger),
    ) -> JSONResponse:
        runner = factory.delegation_sync_runner()
        structured_logger.info("admin.trigger_delegation_sync", job=runner.job_name)
        return await _trigger(runner)

    @router.get("/sync-status/{job_name}", response_model=SyncStatusResponse)
    async def sync_status(
        job_name: str,
        lock: DistributedJobLock = Depends(get_job_lock),
    ) -> SyncStatusResponse:
        try:
            state = await lock.status(job_name)
        except DatabaseError as exc:
            logger.error("admin.sync_status.failed job=%s error=%s", job_name, exc)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
        if state is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job '{job_name}'")
        return SyncStatusResponse(
            job_name=state.job_name,
            is_running=state.is_running,
            started_at=state.started_at,
            completed_at=state.completed_at,
            expires_at=state.expires_at,
            locked_by=state.locked_by,
            last_result=state.last_result.value if state.last_result is not None else None,
            error_message=state.error_message,
            items_processed=state.items_processed,
        )

    return router
