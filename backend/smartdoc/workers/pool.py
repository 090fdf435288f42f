"""
Asyncio Worker Pool
════════════════════

N worker coroutines share one JobQueue:

    worker loop
      │  (claim lock)
      ├── RollingWindowRateLimiter.wait()      ← at most K starts per window
      ├── JobQueue.claim_next()                ← atomic waiting → active
      │
      ├── handler(job)  bounded by job_timeout
      │       ok   → JobQueue.complete()
      │       err  → JobQueue.fail()  → retry later | terminal → on_terminal_failure()
      │
      └── idle → sleep(poll_interval)

The rate limiter caps job *starts* per rolling window independently of the
concurrency limit, which only caps jobs in flight. A janitor task calls
JobQueue.requeue_stalled() periodically so jobs orphaned by a crashed
process are picked up again.

No exception escapes a worker loop: a bad job or a transient database
error is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable

from smartdoc.workers.queue import FailureOutcome, JobQueue, ProcessingJob

logger = logging.getLogger(__name__)

JobHandler = Callable[[ProcessingJob], Awaitable[Any]]
TerminalFailureHook = Callable[[ProcessingJob, BaseException, FailureOutcome], Awaitable[None]]


class RollingWindowRateLimiter:
    """At most ``max_starts`` starts within any ``window_seconds`` span."""

    def __init__(
        self,
        max_starts:     int,
        window_seconds: float,
        clock:          Callable[[], float] = time.monotonic,
    ) -> None:
        if max_starts <= 0 or window_seconds <= 0:
            raise ValueError("max_starts and window_seconds must be positive")
        self._max = max_starts
        self._window = window_seconds
        self._clock = clock
        self._starts: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self._window:
            self._starts.popleft()

    def delay(self) -> float:
        """Seconds until another start is allowed (0 when one is allowed now)."""
        now = self._clock()
        self._prune(now)
        if len(self._starts) < self._max:
            return 0.0
        return max(0.0, self._starts[0] + self._window - now)

    def record(self) -> None:
        self._starts.append(self._clock())

    async def wait(self) -> None:
        while True:
            delay = self.delay()
            if delay <= 0:
                return
            logger.debug("Rate limit reached, waiting %.2fs", delay)
            await asyncio.sleep(delay)


class WorkerPool:

    def __init__(
        self,
        queue:                JobQueue,
        handler:              JobHandler,
        *,
        concurrency:          int = 5,
        rate_limiter:         RollingWindowRateLimiter | None = None,
        poll_interval:        float = 1.0,
        job_timeout:          float | None = None,
        stall_timeout:        float | None = None,
        on_terminal_failure:  TerminalFailureHook | None = None,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self._queue = queue
        self._handler = handler
        self._concurrency = concurrency
        self._rate_limiter = rate_limiter
        self._poll_interval = poll_interval
        self._job_timeout = job_timeout
        self._stall_timeout = stall_timeout
        self._on_terminal_failure = on_terminal_failure

        self._claim_lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._active: set[str] = set()

    @property
    def active_jobs(self) -> frozenset[str]:
        return frozenset(self._active)

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"smartdoc-worker-{i}")
            for i in range(self._concurrency)
        ]
        if self._stall_timeout:
            self._tasks.append(asyncio.create_task(self._janitor_loop(), name="smartdoc-janitor"))
        logger.info(
            "Worker pool started | concurrency=%d poll_interval=%.1fs",
            self._concurrency, self._poll_interval,
        )

    async def stop(self) -> None:
        """Stop claiming new jobs and wait for in-flight jobs to finish."""
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def run_until_idle(self, timeout: float = 30.0) -> None:
        """Process jobs until nothing is ready and nothing is in flight."""
        await self.start()
        deadline = time.monotonic() + timeout
        try:
            while time.monotonic() < deadline:
                counts = await self._queue.counts()
                if counts["active"] == 0 and counts["waiting"] == 0 and not self._active:
                    return
                await asyncio.sleep(min(self._poll_interval, 0.05))
            raise TimeoutError(f"Worker pool not idle after {timeout:.0f}s")
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: int) -> None:
        while not self._stopping.is_set():
            try:
                job = await self._next_job()
            except Exception:
                logger.exception("Claim failed | worker=%d", worker_id)
                job = None

            if job is None:
                await self._sleep(self._poll_interval)
                continue

            await self._execute(job, worker_id)

    async def _next_job(self) -> ProcessingJob | None:
        async with self._claim_lock:
            if self._rate_limiter is not None:
                await self._rate_limiter.wait()
            if self._stopping.is_set():
                return None
            job = await self._queue.claim_next()
            if job is not None and self._rate_limiter is not None:
                self._rate_limiter.record()
            return job

    async def _execute(self, job: ProcessingJob, worker_id: int) -> None:
        self._active.add(job.id)
        t0 = time.monotonic()
        try:
            if self._job_timeout:
                await asyncio.wait_for(self._handler(job), timeout=self._job_timeout)
            else:
                await self._handler(job)
        except Exception as exc:
            await self._handle_failure(job, exc)
        else:
            await self._queue.complete(job.id)
            logger.info(
                "Job done | worker=%d job=%s elapsed_ms=%.0f",
                worker_id, job.id, (time.monotonic() - t0) * 1000,
            )
        finally:
            self._active.discard(job.id)

    async def _handle_failure(self, job: ProcessingJob, exc: BaseException) -> None:
        logger.error("Job error | job=%s attempt=%d error=%s", job.id, job.attempts, exc, exc_info=exc)
        try:
            outcome = await self._queue.fail(job.id, exc)
            if outcome.terminal and self._on_terminal_failure is not None:
                await self._on_terminal_failure(job, exc, outcome)
        except Exception:
            logger.exception("Recording job failure failed | job=%s", job.id)

    async def _janitor_loop(self) -> None:
        interval = max(self._poll_interval, (self._stall_timeout or 60.0) / 4)
        while not self._stopping.is_set():
            try:
                await self._queue.requeue_stalled(self._stall_timeout)
            except Exception:
                logger.exception("Stalled-job sweep failed")
            await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
