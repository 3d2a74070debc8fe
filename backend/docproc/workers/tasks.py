"""
Celery Tasks — Orchestrator Tick

Task: process_next_job
  Beat-scheduled.  Runs exactly one Orchestrator.tick() and returns the
  TickResult as a dict.  The orchestrator (and its circuit breakers) is
  built once per worker process and reused across ticks.

Task: health_check
  Liveness check for the worker fleet.

Time limits come from JOB_LEASE_SECONDS and sit below it, so a killed tick
never outlives its lease; the re-claim then counts as a new attempt.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any

from celery import Task

from docproc.core.config import settings
from docproc.jobs.factory import get_orchestrator
from docproc.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro):
    """
    Execute an async coroutine from a synchronous Celery task.

    One event loop per worker process: pooled DB connections are bound to
    the loop that opened them, so a fresh loop per task would strand them.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop.run_until_complete(coro)


# ---------------------------------------------------------------------------
# Orchestrator tick
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docproc.workers.tasks.process_next_job",
    bind=True,
    acks_late=True,
    ignore_result=False,
    soft_time_limit=settings.tick_soft_time_limit,
    time_limit=settings.tick_time_limit,
)
def process_next_job(self: Task) -> dict[str, Any]:
    result = run_async(get_orchestrator().tick())
    if result.action != "idle":
        logger.info(
            "Tick | action=%s job=%s doc=%s attempts=%s/%s",
            result.action, result.job_id, result.document_id,
            result.attempts, result.max_attempts,
        )
    return dataclasses.asdict(result)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@celery_app.task(name="docproc.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
