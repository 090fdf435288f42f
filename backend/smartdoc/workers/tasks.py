"""
Celery Tasks — Document Processing over the Celery Transport

Task: process_document(job_id)
  1. Claim the processing_jobs row (waiting → active). Not waiting → skip,
     which makes duplicate deliveries harmless.
  2. Run DocumentPipeline.run(job).
  3. Success → JobQueue.complete().
     Failure → JobQueue.fail() applies the retry policy:
       retry    → task.retry(countdown=<policy delay>)
       terminal → pipeline.on_terminal_failure(), task returns "failed".

Task: requeue_stalled_jobs
  Beat-driven. Active jobs with a stale heartbeat go back to waiting and are
  re-published.

Task: prune_chat_history
  Beat-driven. Drops chat history whose document no longer exists.

Each task invocation builds its own ServiceContainer and disposes its engine
before returning: every run_async() call gets a fresh event loop, and pooled
async connections cannot cross loops.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from celery import Task

from smartdoc.core.config import get_settings
from smartdoc.workers.celery_app import celery_app, task_rate_limit
from smartdoc.workers.queue import ProcessingJob

logger = logging.getLogger(__name__)

_settings = get_settings()


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


@asynccontextmanager
async def _container() -> AsyncGenerator[Any, None]:
    # Deferred: the container pulls in every service module
    from smartdoc.services.container import build_container

    container = build_container(get_settings())
    try:
        yield container
    finally:
        await container.aclose()


# ---------------------------------------------------------------------------
# Dispatcher used by JobQueue when QUEUE_BACKEND=celery
# ---------------------------------------------------------------------------

class CeleryDispatcher:
    """Publishes a process_document message for a ready job."""

    def dispatch(self, job: ProcessingJob, countdown: float = 0.0) -> None:
        process_document.apply_async(kwargs={"job_id": job.id}, countdown=countdown or None)
        logger.info("Job published | job=%s countdown=%.1fs", job.id, countdown)


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="smartdoc.workers.tasks.process_document",
    bind=True,
    max_retries=None,            # JobQueue's RetryPolicy decides
    acks_late=True,
    reject_on_worker_lost=True,
    rate_limit=task_rate_limit(_settings.rate_limit_max_jobs, _settings.rate_limit_window_seconds),
)
def process_document(self: Task, *, job_id: str) -> dict[str, Any]:
    return run_async(_process_document_async(self, job_id))


async def _process_document_async(task: Task, job_id: str) -> dict[str, Any]:
    async with _container() as container:
        job = await container.queue.claim(job_id)
        if job is None:
            logger.info("Job not claimable, skipping | job=%s", job_id)
            return {"status": "skipped", "job_id": job_id}

        try:
            result = await container.pipeline.run(job)
        except Exception as exc:
            outcome = await container.queue.fail(job.id, exc)
            if outcome.will_retry:
                raise task.retry(exc=exc, countdown=outcome.delay)
            await container.pipeline.on_terminal_failure(job, exc, outcome)
            return {"status": "failed", "job_id": job_id, "error": outcome.error}

        await container.queue.complete(job.id)
        return result


# ---------------------------------------------------------------------------
# Maintenance: Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="smartdoc.workers.tasks.requeue_stalled_jobs",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stalled_jobs() -> dict[str, int]:
    return run_async(_requeue_stalled_async())


async def _requeue_stalled_async() -> dict[str, int]:
    async with _container() as container:
        requeued = await container.queue.requeue_stalled(container.settings.job_stall_timeout_seconds)
    return {"requeued": requeued}


@celery_app.task(name="smartdoc.workers.tasks.prune_chat_history", acks_late=True)
def prune_chat_history() -> dict[str, int]:
    return run_async(_prune_chat_history_async())


async def _prune_chat_history_async() -> dict[str, int]:
    async with _container() as container:
        removed = await container.documents.prune_orphaned_chat_history()
    return {"removed": removed}


@celery_app.task(name="smartdoc.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
