"""Tests for the Cloud Tasks review worker endpoint."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.dependencies import get_review_dependencies
from common.errors import ExternalServiceError, GitHubAuthError
from common.job_models import JobStatus, RetryPolicy
from common.job_tracker import ReviewJobTracker
from review_worker.routers import health, review
from tests.conftest import FakeFirestore, make_job


@pytest.fixture
def worker(monkeypatch):
    tracker = ReviewJobTracker(db=FakeFirestore())
    outcomes = []

    async def fake_execute(job, deps):
        outcome = outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome

    monkeypatch.setattr(review, "execute_pr_review", fake_execute)

    app = FastAPI()
    app.include_router(health.router)
    app.include_router(review.router)
    app.dependency_overrides[review.get_job_tracker] = lambda: tracker
    app.dependency_overrides[review.get_retry_policy] = lambda: RetryPolicy(max_attempts=2)
    app.dependency_overrides[get_review_dependencies] = lambda: None

    client = TestClient(app)

    def deliver(job, retry_count=0):
        return client.post(
            "/tasks/review",
            content=job.model_dump_json(),
            headers={"Content-Type": "application/json", "X-CloudTasks-TaskRetryCount": str(retry_count)},
        )

    return client, deliver, tracker, outcomes


def test_successful_attempt(worker):
    _, deliver, tracker, outcomes = worker
    outcomes.append(None)

    response = deliver(make_job("d-1"))

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert tracker.get_job("d-1").status == JobStatus.COMPLETED


def test_retryable_failure_returns_503_then_completes(worker):
    _, deliver, tracker, outcomes = worker
    outcomes.extend([ExternalServiceError("LLM 502"), None])

    first = deliver(make_job("d-1"), retry_count=0)
    second = deliver(make_job("d-1"), retry_count=1)

    assert first.status_code == 503
    assert second.status_code == 200
    record = tracker.get_job("d-1")
    assert record.status == JobStatus.COMPLETED
    assert record.attempts == 2


def test_exhausted_after_last_attempt(worker):
    _, deliver, tracker, outcomes = worker
    outcomes.extend([ExternalServiceError("502"), ExternalServiceError("502")])

    deliver(make_job("d-1"), retry_count=0)
    response = deliver(make_job("d-1"), retry_count=1)

    assert response.status_code == 200
    assert response.json()["status"] == "exhausted"
    assert tracker.get_job("d-1").error_message == "ExternalServiceError: 502"


def test_auth_error_is_not_handed_back(worker):
    _, deliver, tracker, outcomes = worker
    outcomes.append(GitHubAuthError("bad key"))

    response = deliver(make_job("d-1"))

    assert response.status_code == 200
    assert tracker.get_job("d-1").status == JobStatus.EXHAUSTED


def test_redelivery_of_finished_job_is_a_no_op(worker):
    _, deliver, tracker, outcomes = worker
    outcomes.append(None)
    deliver(make_job("d-1"))

    response = deliver(make_job("d-1"))

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert outcomes == []


def test_health(worker):
    client, _, _, _ = worker
    assert client.get("/health").json() == {"status": "healthy", "service": "review-worker"}
