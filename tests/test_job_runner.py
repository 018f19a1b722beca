"""Tests for the in-process review job runner."""

import asyncio

import pytest

from common.errors import ExternalServiceError, GitHubAuthError
from common.job_models import JobStatus, RetryPolicy, can_transition
from common.job_runner import ReviewJobRunner, SlidingWindowRateLimiter
from tests.conftest import make_job


async def no_sleep(_delay):
    return None


def make_runner(handler, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=2, base_delay=1.0))
    kwargs.setdefault("rate_limiter", SlidingWindowRateLimiter(100, 1.0))
    kwargs.setdefault("sleep", no_sleep)
    return ReviewJobRunner(handler, **kwargs)


async def run_all(runner):
    runner.start()
    try:
        await asyncio.wait_for(runner.join(), timeout=5)
    finally:
        await runner.stop()


class TestEnqueue:
    async def test_duplicate_delivery_is_rejected(self):
        handled = []

        async def handler(job):
            handled.append(job.delivery_id)

        runner = make_runner(handler)
        assert await runner.enqueue(make_job("d-1")) is True
        assert await runner.enqueue(make_job("d-1")) is False
        await run_all(runner)

        assert handled == ["d-1"]

    async def test_duplicate_after_completion_is_still_rejected(self):
        async def handler(job):
            return None

        runner = make_runner(handler)
        await runner.enqueue(make_job("d-1"))
        await run_all(runner)

        assert runner.get_record("d-1").status == JobStatus.COMPLETED
        assert await runner.enqueue(make_job("d-1")) is False

    async def test_oldest_finished_ids_are_forgotten_past_capacity(self):
        async def handler(job):
            return None

        runner = make_runner(handler, seen_capacity=2)
        for i in range(2):
            await runner.enqueue(make_job(f"d-{i}"))
        await run_all(runner)

        await runner.enqueue(make_job("d-2"))
        assert runner.get_record("d-0") is None
        assert runner.get_record("d-1") is not None


class TestExecution:
    async def test_success_path(self):
        async def handler(job):
            return None

        runner = make_runner(handler)
        await runner.enqueue(make_job("d-1"))
        assert runner.get_record("d-1").status == JobStatus.ENQUEUED
        await run_all(runner)

        record = runner.get_record("d-1")
        assert record.status == JobStatus.COMPLETED
        assert record.attempts == 1
        assert record.completed_at is not None

    async def test_transient_failure_is_retried_with_backoff(self):
        attempts = []
        delays = []

        async def handler(job):
            attempts.append(1)
            if len(attempts) == 1:
                raise ExternalServiceError("502 from GitHub")

        async def record_sleep(delay):
            delays.append(delay)

        runner = make_runner(handler, sleep=record_sleep)
        await runner.enqueue(make_job("d-1"))
        await run_all(runner)

        record = runner.get_record("d-1")
        assert record.status == JobStatus.COMPLETED
        assert record.attempts == 2
        assert delays == [1.0]

    async def test_exhausted_after_max_attempts(self):
        async def handler(job):
            raise ExternalServiceError("LLM down")

        runner = make_runner(handler, retry_policy=RetryPolicy(max_attempts=3, base_delay=0))
        await runner.enqueue(make_job("d-1"))
        await run_all(runner)

        record = runner.get_record("d-1")
        assert record.status == JobStatus.EXHAUSTED
        assert record.attempts == 3
        assert record.error_message == "ExternalServiceError: LLM down"

    async def test_auth_error_is_not_retried(self):
        async def handler(job):
            raise GitHubAuthError("bad private key")

        runner = make_runner(handler, retry_policy=RetryPolicy(max_attempts=5))
        await runner.enqueue(make_job("d-1"))
        await run_all(runner)

        record = runner.get_record("d-1")
        assert record.status == JobStatus.EXHAUSTED
        assert record.attempts == 1

    async def test_concurrency_is_bounded(self):
        active = 0
        peak = 0

        async def handler(job):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        runner = make_runner(handler, concurrency=2)
        for i in range(6):
            await runner.enqueue(make_job(f"d-{i}"))
        await run_all(runner)

        assert peak == 2
        assert all(runner.get_record(f"d-{i}").status == JobStatus.COMPLETED for i in range(6))


class TestLifecycle:
    async def test_start_and_stop_are_idempotent(self):
        async def handler(job):
            return None

        runner = make_runner(handler, concurrency=2)
        assert not runner.is_running

        runner.start()
        runner.start()
        assert runner.is_running
        assert len(runner._workers) == 2

        await runner.stop()
        assert not runner.is_running
        await runner.stop()


class TestRetryPolicy:
    def test_backoff_is_exponential(self):
        policy = RetryPolicy(base_delay=1.0, factor=2.0)
        assert [policy.backoff(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_unknown_errors_are_retryable_within_budget(self):
        policy = RetryPolicy(max_attempts=2)
        assert policy.should_retry(1, RuntimeError("boom"))
        assert not policy.should_retry(2, RuntimeError("boom"))


def test_transitions():
    assert can_transition(JobStatus.ENQUEUED, JobStatus.ACTIVE)
    assert can_transition(JobStatus.FAILED, JobStatus.ACTIVE)
    assert not can_transition(JobStatus.COMPLETED, JobStatus.ACTIVE)
    assert not can_transition(JobStatus.ENQUEUED, JobStatus.COMPLETED)


class TestSlidingWindowRateLimiter:
    async def test_waits_when_window_is_full(self):
        now = [0.0]
        slept = []

        async def fake_sleep(delay):
            slept.append(delay)
            now[0] += delay

        limiter = SlidingWindowRateLimiter(2, 1.0, clock=lambda: now[0], sleep=fake_sleep)
        await limiter.acquire()
        now[0] = 0.25
        await limiter.acquire()
        await limiter.acquire()

        assert slept == [pytest.approx(0.75)]

    def test_rejects_invalid_limits(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(0, 1.0)
