from __future__ import annotations

from fastapi import status
from fastapi.responses import JSONResponse


def conflict_response(job_name: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"success": False, "message": f"Job '{job_name}' is already running"},
    )


def job_failed_response(job_name: str, message: str | None) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": f"{job_name} failed", "message": message or "unknown error"},
    )


__all__ = ["conflict_response", "job_failed_response"]
