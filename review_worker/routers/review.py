import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from api.dependencies import get_review_dependencies, retry_policy_from
from api.services.review_service import ReviewDependencies, execute_pr_review
from common.config import get_settings
from common.job_models import JobStatus, RetryPolicy, ReviewJob
from common.job_tracker import ReviewJobTracker

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache
def get_job_tracker() -> ReviewJobTracker:
    return ReviewJobTracker()


def get_retry_policy() -> RetryPolicy:
    return retry_policy_from(get_settings())


@router.post("/tasks/review")
async def handle_review_task(
    job: ReviewJob,
    x_cloudtasks_taskretrycount: int = Header(default=0),
    tracker: ReviewJobTracker = Depends(get_job_tracker),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
    deps: ReviewDependencies = Depends(get_review_dependencies),
):
    """Run one attempt of a review job delivered by Cloud Tasks.

    Returns 503 when the attempt failed with a retryable error and attempts
    remain, so Cloud Tasks redelivers it with backoff. Every other outcome
    answers 200; the job record in Firestore reflects the real result.
    """
    delivery_id = job.delivery_id
    record = tracker.get_or_create(job)

    if record.status in (JobStatus.COMPLETED, JobStatus.EXHAUSTED):
        logger.info("Job %s already %s, ignoring redelivery", delivery_id, record.status.value)
        return {"status": record.status.value, "delivery_id": delivery_id}

    if record.status == JobStatus.ACTIVE:
        # The previous attempt died without reporting back.
        tracker.transition(record, JobStatus.FAILED, error_message="attempt interrupted")

    tracker.transition(record, JobStatus.ACTIVE)
    attempt = max(record.attempts, x_cloudtasks_taskretrycount + 1)
    logger.info(
        "Starting review job %s attempt %d for %s#%s (trace_id=%s)",
        delivery_id, attempt, job.pr_data.repository, job.pr_data.pull_request_number, job.trace_id,
    )

    try:
        await execute_pr_review(job, deps)
    except Exception as exc:
        error_message = f"{type(exc).__name__}: {exc}"
        tracker.transition(record, JobStatus.FAILED, error_message=error_message)

        if retry_policy.should_retry(attempt, exc):
            logger.warning(
                "Review job %s attempt %d failed, handing back to Cloud Tasks (trace_id=%s): %s",
                delivery_id, attempt, job.trace_id, error_message,
            )
            return JSONResponse(
                status_code=503,
                content={"status": JobStatus.FAILED.value, "delivery_id": delivery_id, "attempt": attempt},
            )

        tracker.transition(record, JobStatus.EXHAUSTED)
        logger.error(
            "Review job %s exhausted after %d attempt(s) (trace_id=%s): %s",
            delivery_id, attempt, job.trace_id, error_message,
        )
        return {"status": JobStatus.EXHAUSTED.value, "delivery_id": delivery_id}

    tracker.transition(record, JobStatus.COMPLETED)
    logger.info("Review job %s completed (trace_id=%s)", delivery_id, job.trace_id)
    return {"status": JobStatus.COMPLETED.value, "delivery_id": delivery_id}
