"""
Operations API Router (read-only)

Endpoints:
  GET /api/v1/ops/batches                   Jobs waiting on a batch extraction operation
  GET /api/v1/ops/batches/{operation_id}    Live status of one operation
  GET /api/v1/ops/breakers                  Circuit breaker state in this process

Same Bearer <CRON_SECRET> guard as the scheduled trigger.  Nothing here
changes a job: completing or failing batch work stays with the
orchestrator tick.
"""

from __future__ import annotations

import logging

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse

from docproc.api.v1.cron import check_cron_secret, error_response
from docproc.core.config import Settings, get_settings
from docproc.jobs.factory import get_orchestrator
from docproc.jobs.orchestrator import Orchestrator
from docproc.schemas.jobs import ErrorResponse
from docproc.schemas.operations import (
    BatchStatusResponse,
    BreakerListResponse,
    BreakerResponse,
    PendingBatchListResponse,
    PendingBatchResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/ops",
    tags=["Operations"],
)

_GUARDED = {
    401: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@router.get(
    "/batches",
    response_model=PendingBatchListResponse,
    summary="List pending batch extraction operations",
    responses=_GUARDED,
)
async def list_pending_batches(
    authorization: str | None = Header(default=None),
    settings:      Settings = Depends(get_settings),
    orchestrator:  Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    rejected = check_cron_secret(authorization, settings)
    if rejected is not None:
        return rejected

    pending = await orchestrator.store.list_pending_batches()
    logger.info("Pending batches listed | count=%d", len(pending))

    body = PendingBatchListResponse(
        pending_operations=len(pending),
        operations=[PendingBatchResponse.from_pending(p) for p in pending],
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(mode="json"))


@router.get(
    "/batches/{operation_id}",
    response_model=BatchStatusResponse,
    summary="Check one batch extraction operation",
    responses={**_GUARDED, 502: {"model": ErrorResponse}},
)
async def get_batch_status(
    operation_id:  str,
    authorization: str | None = Header(default=None),
    settings:      Settings = Depends(get_settings),
    orchestrator:  Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    rejected = check_cron_secret(authorization, settings)
    if rejected is not None:
        return rejected

    try:
        batch_status = await orchestrator.extraction.get_batch_status(operation_id)
    except (ClientError, BotoCoreError) as exc:
        logger.error("Batch status check failed | operation=%s error=%s", operation_id, exc)
        return error_response(status.HTTP_502_BAD_GATEWAY, "EXTRACTION_UNAVAILABLE", "Could not reach the extraction service.")

    owners = await orchestrator.store.list_pending_batches(operation_id=operation_id)
    body = BatchStatusResponse.from_status(operation_id, batch_status, owners[0] if owners else None)

    logger.info("Batch status checked | operation=%s state=%s", operation_id, body.state)
    return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(mode="json"))


@router.get(
    "/breakers",
    response_model=BreakerListResponse,
    summary="Circuit breaker state",
    responses=_GUARDED,
)
async def list_breakers(
    authorization: str | None = Header(default=None),
    settings:      Settings = Depends(get_settings),
    orchestrator:  Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    rejected = check_cron_secret(authorization, settings)
    if rejected is not None:
        return rejected

    snapshots = orchestrator.breakers.snapshot()
    body = BreakerListResponse(
        breakers=[BreakerResponse.from_snapshot(s) for _, s in sorted(snapshots.items())],
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(mode="json"))
