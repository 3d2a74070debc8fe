"""
Celery Application Factory

Runs the orchestrator on a fixed interval via Celery beat.  There is no
long-lived processing loop: beat enqueues process_next_job every
ORCHESTRATOR_TICK_SECONDS and any worker picks it up.  Overlapping ticks
are safe (the job store claims with compare-and-swap + lease), so several
workers may consume the queue.

Queue topology:
  documents.orchestrate  — one orchestrator tick per message
  system.health          — internal health-check tasks
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docproc.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.orchestrate",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.orchestrate",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docproc.workers.tasks.process_next_job": {"queue": "documents.orchestrate"},
    "docproc.workers.tasks.health_check":     {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docproc")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (security: reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.orchestrate",
        task_default_exchange="documents",
        task_default_routing_key="documents.orchestrate",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one tick at a time per worker

        # --- Result TTL ---
        result_expires=3600,   # state lives in PostgreSQL, not Celery results

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (orchestrator tick) ---
        beat_schedule={
            "process-next-job": {
                "task":     "docproc.workers.tasks.process_next_job",
                "schedule": settings.orchestrator_tick_seconds,
                # a tick that waited longer than one interval is superseded by the next
                "options":  {
                    "queue":   "documents.orchestrate",
                    "expires": settings.orchestrator_tick_seconds,
                },
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle workers to prevent memory bloat
    )

    app.autodiscover_tasks(["docproc.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s", task_id, task.name)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    action = retval.get("action", "?") if isinstance(retval, dict) else "?"
    logger.info(
        "Task end | task_id=%s task=%s state=%s action=%s",
        task_id, task.name, state, action,
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s error=%s",
        task_id, exception,
        exc_info=True,
    )
