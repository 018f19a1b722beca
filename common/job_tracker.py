"""Firestore-backed lifecycle records for review jobs run by the Cloud Tasks worker."""

import logging
from datetime import datetime, timezone
from typing import Optional

from google.api_core.exceptions import AlreadyExists

from common.firebase_init import get_firestore_client
from common.job_models import JobStatus, ReviewJob, ReviewJobRecord, can_transition

logger = logging.getLogger(__name__)

COLLECTION = "review_jobs"


class ReviewJobTracker:
    """CRUD operations on the ``review_jobs`` Firestore collection, keyed by delivery id."""

    def __init__(self, db=None):
        self._db = db or get_firestore_client()

    def _doc(self, delivery_id: str):
        return self._db.collection(COLLECTION).document(delivery_id)

    def get_or_create(self, job: ReviewJob) -> ReviewJobRecord:
        """Return the job's record, creating an ``enqueued`` one on first sight."""
        record = ReviewJobRecord(
            delivery_id=job.delivery_id,
            trace_id=job.trace_id,
            repository=job.pr_data.repository,
            pr_number=job.pr_data.pull_request_number,
        )
        try:
            self._doc(job.delivery_id).create(record.model_dump(mode="json"))
            logger.info("Created review job record %s", job.delivery_id)
            return record
        except AlreadyExists:
            existing = self.get_job(job.delivery_id)
            return existing or record

    def get_job(self, delivery_id: str) -> Optional[ReviewJobRecord]:
        """Fetch a job record. Returns ``None`` if not found."""
        doc = self._doc(delivery_id).get()
        if not doc.exists:
            return None
        return ReviewJobRecord(**doc.to_dict())

    def transition(
        self,
        record: ReviewJobRecord,
        status: JobStatus,
        *,
        error_message: Optional[str] = None,
    ) -> ReviewJobRecord:
        """Move ``record`` to ``status`` and persist the changed fields."""
        if not can_transition(record.status, status):
            raise ValueError(
                f"Illegal job transition {record.status.value} -> {status.value} for {record.delivery_id}"
            )

        now = datetime.now(timezone.utc).isoformat()
        record.status = status
        record.updated_at = now
        data: dict = {"status": status.value, "updated_at": now}

        if status == JobStatus.ACTIVE:
            record.attempts += 1
            data["attempts"] = record.attempts
        if status in (JobStatus.COMPLETED, JobStatus.EXHAUSTED):
            record.completed_at = now
            data["completed_at"] = now
        if error_message is not None:
            record.error_message = error_message
            data["error_message"] = error_message

        self._doc(record.delivery_id).update(data)
        logger.info("Job %s -> %s", record.delivery_id, status.value)
        return record
