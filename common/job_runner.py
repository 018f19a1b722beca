"""In-process background job runner for review jobs.

Used when no Cloud Tasks worker is configured. Jobs are keyed by webhook
delivery id, run by a fixed pool of asyncio workers behind a sliding-window
rate limiter, and retried with exponential backoff up to a bounded number of
attempts.
"""

import asyncio
import logging
import time
from collections import OrderedDict, deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol

from common.job_models import JobStatus, RetryPolicy, ReviewJob, ReviewJobRecord, can_transition

logger = logging.getLogger(__name__)

JobHandler = Callable[[ReviewJob], Awaitable[None]]

# Delivery ids remembered for deduplication after their jobs finish.
DEFAULT_SEEN_CAPACITY = 10_000


class JobQueue(Protocol):
    async def enqueue(self, job: ReviewJob) -> bool:
        """Queue ``job``; return False when its delivery id is already known."""
        ...


class SlidingWindowRateLimiter:
    """Allow at most ``max_calls`` acquisitions in any ``window`` seconds."""

    def __init__(
        self,
        max_calls: int,
        window: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_calls <= 0 or window <= 0:
            raise ValueError("max_calls and window must be positive")
        self._max_calls = max_calls
        self._window = window
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                while self._calls and now - self._calls[0] >= self._window:
                    self._calls.popleft()
                if len(self._calls) < self._max_calls:
                    self._calls.append(now)
                    return
                await self._sleep(self._window - (now - self._calls[0]))


class ReviewJobRunner:
    """
    Bounded pool of workers consuming an in-memory queue of review jobs.

    Lifecycle of a job: ``enqueued -> active -> completed``, or
    ``active -> failed -> active ... -> exhausted`` when attempts run out or
    the error is not retryable. A job occupies one worker slot for its whole
    life, including the backoff sleeps between attempts.
    """

    def __init__(
        self,
        handler: JobHandler,
        concurrency: int = 2,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        seen_capacity: int = DEFAULT_SEEN_CAPACITY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self._handler = handler
        self._concurrency = concurrency
        self._retry = retry_policy or RetryPolicy()
        self._limiter = rate_limiter or SlidingWindowRateLimiter(10, 1.0)
        self._seen_capacity = seen_capacity
        self._sleep = sleep
        self._queue: asyncio.Queue[ReviewJob] = asyncio.Queue()
        self._records: OrderedDict[str, ReviewJobRecord] = OrderedDict()
        self._workers: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def get_record(self, delivery_id: str) -> Optional[ReviewJobRecord]:
        return self._records.get(delivery_id)

    async def enqueue(self, job: ReviewJob) -> bool:
        if job.delivery_id in self._records:
            logger.info(
                "Duplicate delivery %s ignored (trace_id=%s)", job.delivery_id, job.trace_id
            )
            return False

        self._records[job.delivery_id] = ReviewJobRecord(
            delivery_id=job.delivery_id,
            trace_id=job.trace_id,
            repository=job.pr_data.repository,
            pr_number=job.pr_data.pull_request_number,
        )
        self._evict_finished()
        self._queue.put_nowait(job)
        logger.info(
            "Enqueued review job %s for %s#%s (trace_id=%s)",
            job.delivery_id, job.pr_data.repository, job.pr_data.pull_request_number, job.trace_id,
        )
        return True

    def _evict_finished(self) -> None:
        """Forget the oldest finished jobs once the dedup record is full."""
        if len(self._records) <= self._seen_capacity:
            return
        for delivery_id in list(self._records):
            if len(self._records) <= self._seen_capacity:
                break
            if self._records[delivery_id].status in (JobStatus.COMPLETED, JobStatus.EXHAUSTED):
                del self._records[delivery_id]

    def _transition(self, record: ReviewJobRecord, target: JobStatus) -> None:
        if not can_transition(record.status, target):
            raise RuntimeError(
                f"Illegal job transition {record.status.value} -> {target.value} for {record.delivery_id}"
            )
        now = datetime.now(timezone.utc).isoformat()
        record.status = target
        record.updated_at = now
        if target in (JobStatus.COMPLETED, JobStatus.EXHAUSTED):
            record.completed_at = now

    async def _run_job(self, job: ReviewJob) -> None:
        record = self._records[job.delivery_id]

        while True:
            await self._limiter.acquire()
            self._transition(record, JobStatus.ACTIVE)
            record.attempts += 1
            logger.info(
                "Job %s attempt %d started (trace_id=%s)", job.delivery_id, record.attempts, job.trace_id
            )

            try:
                await self._handler(job)
            except Exception as exc:
                self._transition(record, JobStatus.FAILED)
                record.error_message = f"{type(exc).__name__}: {exc}"

                if not self._retry.should_retry(record.attempts, exc):
                    self._transition(record, JobStatus.EXHAUSTED)
                    logger.error(
                        "Job %s exhausted after %d attempt(s) (trace_id=%s): %s",
                        job.delivery_id, record.attempts, job.trace_id, record.error_message,
                    )
                    return

                delay = self._retry.backoff(record.attempts)
                logger.warning(
                    "Job %s attempt %d failed, retrying in %.1fs (trace_id=%s): %s",
                    job.delivery_id, record.attempts, delay, job.trace_id, record.error_message,
                )
                await self._sleep(delay)
                continue

            self._transition(record, JobStatus.COMPLETED)
            logger.info(
                "Job %s completed after %d attempt(s) (trace_id=%s)",
                job.delivery_id, record.attempts, job.trace_id,
            )
            return

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run_job(job)
            except Exception:
                logger.exception("Worker %d crashed on job %s", index, job.delivery_id)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self.is_running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"review-worker-{i}")
            for i in range(self._concurrency)
        ]
        logger.info("Review job runner started with %d workers", self._concurrency)

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def stop(self) -> None:
        if not self.is_running:
            return
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Review job runner stopped")
