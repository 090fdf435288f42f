"""
Durable Job Queue  —  SQL-Backed, Idempotent, At-Most-One In Flight
═══════════════════════════════════════════════════════════════════

Job state machine (processing_jobs.state):

    enqueue ──► waiting ──claim──► active ──► completed
                  ▲                   │
                  │   retryable &     │
                  └── attempts left ──┤
                     (available_at =  │
                      now + backoff)  └──► failed  (terminal)

Guarantees
──────────
  • job id == document id. Enqueueing an id that is waiting or active is a
    no-op; one that is completed or failed is rescheduled from scratch.
  • claim is a single ``UPDATE … WHERE state = 'waiting' … RETURNING``, so
    two workers can never both move the same row to active.
  • delivery is at-least-once: a worker that dies mid-job leaves the row
    active; requeue_stalled() returns it to waiting once its heartbeat
    (updated_at, bumped by every progress report) is older than the stall
    timeout.
  • retry policy: up to ``max_attempts`` attempts, delay
    ``base_delay * 2 ** (attempt - 1)``; validation / not-found style
    errors are terminal on the first failure.
  • database failures leave every public method as QueueError, which the
    API renders as 503 and the retry policy treats as transient.

Cancellation removes a job only while it is waiting. An active job cannot
be interrupted; it runs to completion or failure.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from smartdoc.core.errors import QueueError, is_retryable
from smartdoc.db.session import SessionFactory, transaction
from smartdoc.models.documents import ProcessingJobRecord, utcnow

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000

_F = TypeVar("_F", bound=Callable[..., Awaitable[Any]])


class JobState(str, Enum):
    WAITING   = "waiting"
    ACTIVE    = "active"
    COMPLETED = "completed"
    FAILED    = "failed"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JobPayload:
    document_id: str
    user_id:     str
    storage_key: str
    file_type:   str

    def to_dict(self) -> dict[str, str]:
        return {
            "document_id": self.document_id,
            "user_id":     self.user_id,
            "storage_key": self.storage_key,
            "file_type":   self.file_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobPayload":
        return cls(
            document_id=str(data["document_id"]),
            user_id=str(data["user_id"]),
            storage_key=str(data["storage_key"]),
            file_type=str(data["file_type"]),
        )


@dataclass
class ProcessingJob:
    id:           str
    payload:      JobPayload
    state:        JobState
    attempts:     int
    max_attempts: int
    progress:     int = 0
    last_error:   str | None = None
    available_at: datetime | None = None
    started_at:   datetime | None = None
    finished_at:  datetime | None = None
    created_at:   datetime | None = None

    @classmethod
    def from_record(cls, row: ProcessingJobRecord) -> "ProcessingJob":
        return cls(
            id=row.id,
            payload=JobPayload.from_dict(row.payload),
            state=JobState(row.state),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            progress=row.progress,
            last_error=row.last_error,
            available_at=row.available_at,
            started_at=row.started_at,
            finished_at=row.finished_at,
            created_at=row.created_at,
        )

    def status(self) -> dict[str, Any]:
        """Shape returned to status pollers."""
        return {
            "id":            self.id,
            "state":         self.state.value,
            "progress":      self.progress,
            "attempts":      self.attempts,
            "max_attempts":  self.max_attempts,
            "data":          self.payload.to_dict(),
            "failed_reason": self.last_error,
            "finished_at":   self.finished_at,
        }


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int   = 3
    base_delay:   float = 2.0     # seconds, doubles each attempt
    max_delay:    float = 300.0

    def delay_for(self, attempt: int) -> float:
        """Back-off before the attempt that follows failed attempt ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** max(0, attempt - 1)), self.max_delay)

    def should_retry(self, attempt: int, exc: BaseException) -> bool:
        return attempt < self.max_attempts and is_retryable(exc)


@dataclass
class FailureOutcome:
    job_id:      str
    will_retry:  bool
    attempts:    int
    delay:       float | None = None
    error:       str = ""
    terminal:    bool = field(init=False)

    def __post_init__(self) -> None:
        self.terminal = not self.will_retry


class JobDispatcher(Protocol):
    """Pushes a ready job to an external transport (Celery)."""

    def dispatch(self, job: ProcessingJob, countdown: float = 0.0) -> None: ...


# ---------------------------------------------------------------------------
# Database failures surface as QueueError
# ---------------------------------------------------------------------------

def _queue_operation(method: _F) -> _F:
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("Job queue database error | op=%s error=%s", method.__name__, exc)
            raise QueueError(f"Job queue unavailable during {method.__name__}: {exc}") from exc

    return wrapper  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class JobQueue:

    def __init__(
        self,
        sessions:     SessionFactory,
        retry_policy: RetryPolicy | None = None,
        dispatcher:   JobDispatcher | None = None,
    ) -> None:
        self._sessions = sessions
        self.retry_policy = retry_policy or RetryPolicy()
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    @_queue_operation
    async def enqueue(self, payload: JobPayload) -> ProcessingJob:
        """
        Idempotent enqueue keyed by document id.

        waiting / active   → returned unchanged
        completed / failed → reset to waiting with a fresh attempt budget
        absent             → inserted as waiting
        """
        job_id = payload.document_id
        now = utcnow()
        scheduled = False

        try:
            async with transaction(self._sessions) as session:
                row = await session.get(ProcessingJobRecord, job_id, with_for_update=True)
                if row is None:
                    row = ProcessingJobRecord(
                        id=job_id,
                        payload=payload.to_dict(),
                        state=JobState.WAITING.value,
                        attempts=0,
                        max_attempts=self.retry_policy.max_attempts,
                        progress=0,
                        available_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                    scheduled = True
                elif row.state in (JobState.COMPLETED.value, JobState.FAILED.value):
                    row.payload = payload.to_dict()
                    row.state = JobState.WAITING.value
                    row.attempts = 0
                    row.max_attempts = self.retry_policy.max_attempts
                    row.progress = 0
                    row.last_error = None
                    row.available_at = now
                    row.started_at = None
                    row.finished_at = None
                    row.updated_at = now
                    scheduled = True
                job = ProcessingJob.from_record(row)
        except IntegrityError:
            # Lost an insert race with a concurrent enqueue of the same id
            existing = await self.get_status(job_id)
            if existing is None:
                raise
            logger.info("Enqueue no-op (concurrent insert) | job=%s", job_id)
            return existing

        if scheduled:
            logger.info("Job enqueued | job=%s type=%s", job_id, payload.file_type)
            if self._dispatcher is not None:
                self._dispatcher.dispatch(job)
        else:
            logger.info("Enqueue no-op | job=%s state=%s", job_id, job.state.value)
        return job

    @_queue_operation
    async def cancel(self, job_id: str) -> bool:
        """Remove a waiting job. Returns False for active, finished or unknown jobs."""
        async with transaction(self._sessions) as session:
            result = await session.execute(
                delete(ProcessingJobRecord).where(
                    ProcessingJobRecord.id == job_id,
                    ProcessingJobRecord.state == JobState.WAITING.value,
                )
            )
        cancelled = bool(result.rowcount)
        logger.info("Cancel | job=%s cancelled=%s", job_id, cancelled)
        return cancelled

    @_queue_operation
    async def get_status(self, job_id: str) -> ProcessingJob | None:
        async with self._sessions() as session:
            row = await session.get(ProcessingJobRecord, job_id)
            return ProcessingJob.from_record(row) if row is not None else None

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    @_queue_operation
    async def claim_next(self) -> ProcessingJob | None:
        """Atomically move the oldest ready job to active (roughly FIFO)."""
        now = utcnow()
        candidate = (
            select(ProcessingJobRecord.id)
            .where(
                ProcessingJobRecord.state == JobState.WAITING.value,
                ProcessingJobRecord.available_at <= now,
            )
            .order_by(ProcessingJobRecord.available_at, ProcessingJobRecord.created_at)
            .limit(1)
            .scalar_subquery()
        )
        return await self._claim_where(ProcessingJobRecord.id == candidate, now)

    @_queue_operation
    async def claim(self, job_id: str) -> ProcessingJob | None:
        """Claim a specific job (Celery transport). None if not waiting."""
        return await self._claim_where(ProcessingJobRecord.id == job_id, utcnow())

    async def _claim_where(self, condition, now: datetime) -> ProcessingJob | None:
        async with transaction(self._sessions) as session:
            result = await session.execute(
                update(ProcessingJobRecord)
                .where(condition, ProcessingJobRecord.state == JobState.WAITING.value)
                .values(
                    state=JobState.ACTIVE.value,
                    attempts=ProcessingJobRecord.attempts + 1,
                    started_at=now,
                    updated_at=now,
                )
                .returning(ProcessingJobRecord)
                .execution_options(synchronize_session=False)
            )
            row = result.scalars().first()
            if row is None:
                return None
            job = ProcessingJob.from_record(row)

        logger.info("Job claimed | job=%s attempt=%d/%d", job.id, job.attempts, job.max_attempts)
        return job

    @_queue_operation
    async def report_progress(self, job_id: str, progress: int) -> None:
        """Mirror a pipeline checkpoint onto the job; doubles as a heartbeat."""
        async with transaction(self._sessions) as session:
            await session.execute(
                update(ProcessingJobRecord)
                .where(
                    ProcessingJobRecord.id == job_id,
                    ProcessingJobRecord.state == JobState.ACTIVE.value,
                )
                .values(
                    progress=case(
                        (ProcessingJobRecord.progress > progress, ProcessingJobRecord.progress),
                        else_=progress,
                    ),
                    updated_at=utcnow(),
                )
            )

    @_queue_operation
    async def complete(self, job_id: str) -> None:
        now = utcnow()
        async with transaction(self._sessions) as session:
            await session.execute(
                update(ProcessingJobRecord)
                .where(ProcessingJobRecord.id == job_id)
                .values(
                    state=JobState.COMPLETED.value,
                    progress=100,
                    last_error=None,
                    finished_at=now,
                    updated_at=now,
                )
            )
        logger.info("Job completed | job=%s", job_id)

    @_queue_operation
    async def fail(self, job_id: str, exc: BaseException) -> FailureOutcome:
        """
        Record a failed attempt and decide between a delayed retry and a
        terminal failure.
        """
        message = (str(exc) or type(exc).__name__)[:MAX_ERROR_LENGTH]
        now = utcnow()

        async with transaction(self._sessions) as session:
            row = await session.get(ProcessingJobRecord, job_id, with_for_update=True)
            if row is None:
                logger.warning("Fail on unknown job | job=%s error=%s", job_id, message)
                return FailureOutcome(job_id=job_id, will_retry=False, attempts=0, error=message)

            attempts = row.attempts
            policy = RetryPolicy(
                max_attempts=row.max_attempts,
                base_delay=self.retry_policy.base_delay,
                max_delay=self.retry_policy.max_delay,
            )
            row.last_error = message
            row.updated_at = now

            if policy.should_retry(attempts, exc):
                delay = policy.delay_for(attempts)
                row.state = JobState.WAITING.value
                row.available_at = now + timedelta(seconds=delay)
                outcome = FailureOutcome(
                    job_id=job_id, will_retry=True, attempts=attempts, delay=delay, error=message,
                )
            else:
                row.state = JobState.FAILED.value
                row.finished_at = now
                outcome = FailureOutcome(
                    job_id=job_id, will_retry=False, attempts=attempts, error=message,
                )

        if outcome.will_retry:
            logger.warning(
                "Job attempt failed, retrying | job=%s attempt=%d delay=%.1fs error=%s",
                job_id, attempts, outcome.delay, message,
            )
        else:
            logger.error(
                "Job failed terminally | job=%s attempts=%d error=%s", job_id, attempts, message,
            )
        return outcome

    @_queue_operation
    async def requeue_stalled(self, stall_timeout: float) -> int:
        """Return active jobs with a stale heartbeat to waiting."""
        now = utcnow()
        cutoff = now - timedelta(seconds=stall_timeout)
        async with transaction(self._sessions) as session:
            result = await session.execute(
                update(ProcessingJobRecord)
                .where(
                    ProcessingJobRecord.state == JobState.ACTIVE.value,
                    ProcessingJobRecord.updated_at < cutoff,
                )
                .values(state=JobState.WAITING.value, available_at=now, updated_at=now)
                .returning(ProcessingJobRecord.id)
            )
            ids = list(result.scalars().all())

        for job_id in ids:
            logger.warning("Stalled job requeued | job=%s", job_id)
        if self._dispatcher is not None:
            for job_id in ids:
                job = await self.get_status(job_id)
                if job is not None:
                    self._dispatcher.dispatch(job)
        return len(ids)

    @_queue_operation
    async def counts(self) -> dict[str, int]:
        async with self._sessions() as session:
            result = await session.execute(
                select(ProcessingJobRecord.state, func.count()).group_by(ProcessingJobRecord.state)
            )
            found = {state: count for state, count in result.all()}
        return {state.value: int(found.get(state.value, 0)) for state in JobState}
