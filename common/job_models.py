from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from common.errors import GitGuardError


class JobStatus(str, Enum):
    ENQUEUED = "enqueued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


# Allowed state transitions of a review job.
_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.ENQUEUED: {JobStatus.ACTIVE},
    JobStatus.ACTIVE: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.FAILED: {JobStatus.ACTIVE, JobStatus.EXHAUSTED},
    JobStatus.COMPLETED: set(),
    JobStatus.EXHAUSTED: set(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in _TRANSITIONS[current]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class PRData(BaseModel):
    """Pull request fields extracted from a ``pull_request`` webhook."""

    repository: str
    pull_request_number: int
    title: str
    author: str
    action: str
    installation_id: Optional[int] = None
    head_sha: Optional[str] = None
    received_at: str = Field(default_factory=_utcnow)
    trace_id: Optional[str] = None

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repo_name(self) -> str:
        return self.repository.split("/", 1)[1]


class ReviewJob(BaseModel):
    """Unit of queued work. ``delivery_id`` is the deduplication key."""

    pr_data: PRData
    delivery_id: str
    trace_id: str


class ReviewJobRecord(BaseModel):
    """Persisted lifecycle of one review job."""

    delivery_id: str
    trace_id: str
    repository: str
    pr_number: int
    status: JobStatus = JobStatus.ENQUEUED
    attempts: int = 0
    created_at: str = Field(default_factory=_utcnow)
    updated_at: str = Field(default_factory=_utcnow)
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    cloud_task_name: Optional[str] = None


class RetryPolicy(BaseModel):
    """Bounded retries with exponential backoff."""

    max_attempts: int = Field(default=2, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    factor: float = Field(default=2.0, ge=1)

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """``attempt`` is the 1-based number of the attempt that just failed."""
        if attempt >= self.max_attempts:
            return False
        if isinstance(error, GitGuardError):
            return error.retryable
        # Unknown errors (bugs, SDK exceptions) get the standard retry budget.
        return True

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt``."""
        return self.base_delay * (self.factor ** max(attempt - 1, 0))
