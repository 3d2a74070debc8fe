"""
Scheduled Trigger API Router
GET|POST /api/v1/cron/process-jobs

Called by an external scheduler (cron, EventBridge, Cloud Scheduler) on a
fixed interval.  Every call runs exactly one orchestrator tick.

Authentication:
  Authorization: Bearer <CRON_SECRET>
  401 — header missing or wrong
  503 — CRON_SECRET not configured (the endpoint refuses to run open)

Responses:
  200 — idle, or a job advanced (including requeued after an error)
  500 — the job failed permanently on this tick
  504 — the tick ran past its time limit and was cancelled; the job keeps
        its lease and is re-claimed as a new attempt once it expires
"""

from __future__ import annotations

import asyncio
import hmac
import logging

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse

from docproc.core.config import Settings, get_settings
from docproc.jobs.factory import get_orchestrator
from docproc.jobs.orchestrator import Orchestrator
from docproc.schemas.jobs import ErrorResponse, TickResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/cron",
    tags=["Job Processing"],
)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error_code=code, message=message).model_dump(mode="json"),
    )


def check_cron_secret(authorization: str | None, settings: Settings) -> JSONResponse | None:
    """Error response when the caller may not trigger work, else None."""
    if not settings.cron_secret:
        logger.error("Cron-protected endpoint called but CRON_SECRET is not configured")
        return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "CRON_NOT_CONFIGURED", "Cron secret is not configured.")

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        logger.warning("Cron-protected endpoint rejected | reason=bad_secret")
        return error_response(status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED", "Unauthorized.")
    return None


@router.api_route(
    "/process-jobs",
    methods=["GET", "POST"],
    response_model=TickResponse,
    summary="Advance one document-processing job",
    responses={
        401: {"model": ErrorResponse},
        500: {"model": TickResponse},
        503: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def process_jobs(
    authorization: str | None = Header(default=None),
    settings:      Settings = Depends(get_settings),
    orchestrator:  Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    rejected = check_cron_secret(authorization, settings)
    if rejected is not None:
        return rejected

    try:
        result = await asyncio.wait_for(orchestrator.tick(), timeout=settings.tick_soft_time_limit)
    except asyncio.TimeoutError:
        logger.error("Cron tick timed out | limit=%ss", settings.tick_soft_time_limit)
        return error_response(status.HTTP_504_GATEWAY_TIMEOUT, "TICK_TIMEOUT", "Tick exceeded its time limit.")

    body   = TickResponse.from_result(result)

    logger.info(
        "Cron tick | action=%s job=%s status=%s",
        result.action, result.job_id or "-", result.job_status or "-",
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR if result.is_failure else status.HTTP_200_OK,
        content=body.model_dump(mode="json"),
    )
