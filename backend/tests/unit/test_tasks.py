"""
Unit Tests — Celery Tasks
══════════════════════════
Tests for smartdoc/workers/tasks.py and smartdoc/workers/celery_app.py

The task bodies are exercised through their async implementations with the
per-task container replaced by the test container, so no broker is needed.

Coverage:
  ✅ process_document: claim → pipeline → complete
  ✅ duplicate delivery of a non-waiting job is skipped
  ✅ retryable failure → task.retry(countdown=policy delay)
  ✅ terminal failure → document marked failed, task returns "failed"
  ✅ maintenance tasks: stalled-job sweep and chat-history pruning
  ✅ CeleryDispatcher publishes the job id with its countdown
  ✅ rate limit conversion and run_async helper
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

import pytest
from celery.exceptions import Retry

from smartdoc.core.errors import EmbeddingError
from smartdoc.workers import tasks
from smartdoc.workers.celery_app import TASK_ROUTES, celery_app, task_rate_limit
from smartdoc.workers.queue import JobState


@pytest.fixture
def task_container(monkeypatch, container):
    """Route every task's _container() to the test container."""

    @asynccontextmanager
    async def _fake_container():
        yield container

    monkeypatch.setattr(tasks, "_container", _fake_container)
    return container


async def _queued_document(container, fakes, data: bytes):
    doc = await container.documents.create_document(fakes.TEST_USER, "invoice.txt", data)
    job = await container.documents.enqueue_processing(doc.id, fakes.TEST_USER)
    return doc, job


# ─────────────────────────────────────────────────────────────────────────────
# process_document
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestProcessDocumentTask:

    async def test_success(self, task_container, sample_txt_bytes, fakes):
        doc, job = await _queued_document(task_container, fakes, sample_txt_bytes)

        result = await tasks._process_document_async(MagicMock(), job.id)

        assert result["status"] == "completed"
        assert result["chunk_count"] >= 1
        stored = await task_container.queue.get_status(job.id)
        assert stored.state is JobState.COMPLETED
        assert (await task_container.documents_repo.get(doc.id)).status_stage == "completed"

    async def test_duplicate_delivery_is_skipped(self, task_container, sample_txt_bytes, fakes):
        _, job = await _queued_document(task_container, fakes, sample_txt_bytes)
        await task_container.queue.claim(job.id)

        result = await tasks._process_document_async(MagicMock(), job.id)

        assert result == {"status": "skipped", "job_id": job.id}

    async def test_unknown_job_is_skipped(self, task_container):
        result = await tasks._process_document_async(MagicMock(), "no-such-job")
        assert result["status"] == "skipped"

    async def test_retryable_failure_schedules_retry(
        self, task_container, sample_txt_bytes, fake_embedder, fakes,
    ):
        fake_embedder.error = EmbeddingError("embedding provider unavailable")
        _, job = await _queued_document(task_container, fakes, sample_txt_bytes)
        task = MagicMock()
        task.retry.return_value = Retry("retry scheduled")

        with pytest.raises(Retry):
            await tasks._process_document_async(task, job.id)

        kwargs = task.retry.call_args.kwargs
        assert kwargs["countdown"] == pytest.approx(task_container.settings.job_backoff_base_seconds)
        assert isinstance(kwargs["exc"], EmbeddingError)
        stored = await task_container.queue.get_status(job.id)
        assert stored.state is JobState.WAITING
        assert stored.attempts == 1

    async def test_terminal_failure(self, task_container, memory_store, sample_txt_bytes, fakes):
        doc, job = await _queued_document(task_container, fakes, sample_txt_bytes)
        memory_store.objects.clear()
        task = MagicMock()

        result = await tasks._process_document_async(task, job.id)

        assert result["status"] == "failed"
        task.retry.assert_not_called()
        failed = await task_container.documents_repo.get(doc.id)
        assert failed.status_stage == "failed"
        assert failed.status_message == "Processing failed after 1 attempt(s)"


# ─────────────────────────────────────────────────────────────────────────────
# Maintenance
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestMaintenanceTasks:

    async def test_requeue_stalled(self, task_container, sample_txt_bytes, fakes, monkeypatch):
        _, job = await _queued_document(task_container, fakes, sample_txt_bytes)
        await task_container.queue.claim(job.id)
        await asyncio.sleep(0.05)
        monkeypatch.setattr(task_container.settings, "job_stall_timeout_seconds", 0.01)

        result = await tasks._requeue_stalled_async()

        assert result == {"requeued": 1}
        assert (await task_container.queue.get_status(job.id)).state is JobState.WAITING

    async def test_prune_chat_history(self, task_container, make_document, chats_repo, fakes):
        doc = await make_document()
        await chats_repo.append_exchange(doc.id, fakes.TEST_USER, "q", "a", [])
        await task_container.documents.delete_document(doc.id, fakes.TEST_USER)

        assert await tasks._prune_chat_history_async() == {"removed": 2}

    def test_health_check(self):
        assert tasks.health_check() == {"status": "ok", "worker": "healthy"}


# ─────────────────────────────────────────────────────────────────────────────
# Dispatcher + app configuration
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCeleryWiring:

    def test_dispatcher_publishes_job_id(self, monkeypatch):
        task = MagicMock()
        monkeypatch.setattr(tasks, "process_document", task)
        job = MagicMock(id="job-1")

        tasks.CeleryDispatcher().dispatch(job, countdown=4.0)

        task.apply_async.assert_called_once_with(kwargs={"job_id": "job-1"}, countdown=4.0)

    def test_dispatcher_without_delay(self, monkeypatch):
        task = MagicMock()
        monkeypatch.setattr(tasks, "process_document", task)

        tasks.CeleryDispatcher().dispatch(MagicMock(id="job-2"))

        assert task.apply_async.call_args.kwargs["countdown"] is None

    @pytest.mark.parametrize(
        "max_jobs, window, expected",
        [(10, 60.0, "10/m"), (1, 1.0, "60/m"), (5, 30.0, "10/m"), (3, 120.0, "1.5/m")],
    )
    def test_task_rate_limit(self, max_jobs, window, expected):
        assert task_rate_limit(max_jobs, window) == expected

    def test_routes_and_serialization(self):
        assert TASK_ROUTES["smartdoc.workers.tasks.process_document"] == {"queue": "documents.process"}
        assert celery_app.conf.task_serializer == "json"
        assert celery_app.conf.task_acks_late is True
        assert "prune-orphaned-chat-history-hourly" in celery_app.conf.beat_schedule

    def test_run_async_outside_a_loop(self):
        async def answer():
            return 42

        assert tasks.run_async(answer()) == 42

    async def test_run_async_inside_a_loop(self):
        async def answer():
            return 7

        assert tasks.run_async(answer()) == 7
