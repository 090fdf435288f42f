"""
Celery Application Factory

Alternative transport for the job queue (QUEUE_BACKEND=celery). The
processing_jobs table stays the source of truth: a Celery message only says
"job <id> may be ready", and the task claims the row before doing anything,
so a duplicate delivery is a no-op.

Queue topology:
  documents.process   — pipeline runs, one message per ready job
  documents.maintain  — beat-driven stalled-job recovery
  system.health       — internal health-check tasks

Task payloads carry the job id only. File bytes are never put on the broker;
the worker loads them from the object store.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from smartdoc.core.config import settings
from smartdoc.core.logging_config import LOG_FORMAT

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.process",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.process",
        durable=True,
    ),
    Queue(
        "documents.maintain",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.maintain",
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
    "smartdoc.workers.tasks.process_document":     {"queue": "documents.process"},
    "smartdoc.workers.tasks.requeue_stalled_jobs": {"queue": "documents.maintain"},
    "smartdoc.workers.tasks.prune_chat_history":   {"queue": "documents.maintain"},
    "smartdoc.workers.tasks.health_check":         {"queue": "system.health"},
}


def task_rate_limit(max_jobs: int, window_seconds: float) -> str:
    """Celery only understands /s, /m and /h; express the window per minute."""
    per_minute = max_jobs * 60.0 / window_seconds
    return f"{per_minute:g}/m"


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("smartdoc")

    stall_sweep_every = max(30.0, settings.job_stall_timeout_seconds / 4)

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.process",
        task_default_exchange="documents",
        task_default_routing_key="documents.process",

        # --- Reliability ---
        task_acks_late=True,         # ack only after the task finishes
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=settings.max_concurrent_jobs,

        # --- Timeouts ---
        task_soft_time_limit=int(settings.stage_timeout_seconds * 8),
        task_time_limit=int(settings.stage_timeout_seconds * 8) + 60,

        # --- Result TTL ---
        result_expires=3600,   # job state lives in processing_jobs, not Celery results

        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "requeue-stalled-jobs": {
                "task":     "smartdoc.workers.tasks.requeue_stalled_jobs",
                "schedule": stall_sweep_every,
                "options":  {"queue": "documents.maintain"},
            },
            "prune-orphaned-chat-history-hourly": {
                "task":     "smartdoc.workers.tasks.prune_chat_history",
                "schedule": 3600,
                "options":  {"queue": "documents.maintain"},
            },
        },

        worker_max_tasks_per_child=200,
        worker_disable_rate_limits=False,
    )

    app.autodiscover_tasks(["smartdoc.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_after_setup_logger(logger, **_):
    for handler in logger.handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s job=%s",
        task_id, task.name, kwargs.get("job_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s job=%s",
        task_id, task.name, state, kwargs.get("job_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s job=%s error=%s",
        task_id, (kwargs or {}).get("job_id", "-"), exception,
        exc_info=True,
    )
