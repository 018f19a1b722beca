"""Google Cloud Tasks dispatcher for review jobs."""

import asyncio
import logging
import re
from typing import Optional

from google.api_core.exceptions import AlreadyExists, GoogleAPICallError
from google.cloud import tasks_v2

from common.config import ServiceSettings, get_settings
from common.errors import ExternalServiceError
from common.job_models import ReviewJob

logger = logging.getLogger(__name__)

REVIEW_TASK_PATH = "/tasks/review"
_TASK_ID_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


def task_id_for(delivery_id: str) -> str:
    """Cloud Task ids allow letters, digits, hyphens and underscores only."""
    return "review-" + _TASK_ID_UNSAFE.sub("_", delivery_id)[:480]


class CloudTasksService:
    """Dispatch review jobs to the review worker via Cloud Tasks.

    The task is named after the webhook delivery id, so Cloud Tasks itself
    rejects a redelivered webhook with ``AlreadyExists``. When
    ``REVIEW_WORKER_URL`` is not set, ``is_enabled`` is ``False`` and the API
    falls back to the in-process job runner.
    """

    def __init__(
        self,
        settings: Optional[ServiceSettings] = None,
        client: Optional[tasks_v2.CloudTasksClient] = None,
    ):
        settings = settings or get_settings()
        self._project = settings.gcp_project_id
        self._location = settings.gcp_location
        self._queue = settings.cloud_tasks_queue
        self._service_url = settings.review_worker_url
        self._sa_email = settings.cloud_tasks_sa_email
        self._client = client

    @property
    def is_enabled(self) -> bool:
        return bool(self._service_url)

    def _get_client(self) -> tasks_v2.CloudTasksClient:
        if self._client is None:
            self._client = tasks_v2.CloudTasksClient()
        return self._client

    def _build_task(self, parent: str, job: ReviewJob) -> dict:
        url = f"{self._service_url.rstrip('/')}{REVIEW_TASK_PATH}"
        task: dict = {
            "name": f"{parent}/tasks/{task_id_for(job.delivery_id)}",
            "http_request": {
                "http_method": tasks_v2.HttpMethod.POST,
                "url": url,
                "headers": {"Content-Type": "application/json"},
                "body": job.model_dump_json().encode(),
            },
            "dispatch_deadline": {"seconds": 1800},  # 30 minutes
        }

        # OIDC token for authenticated Cloud Run services
        if self._sa_email:
            task["http_request"]["oidc_token"] = {
                "service_account_email": self._sa_email,
                "audience": self._service_url,
            }
        return task

    def dispatch_review(self, job: ReviewJob) -> Optional[str]:
        """Create the Cloud Task for ``job``.

        Returns the task resource name, or ``None`` when a task for the same
        delivery id already exists.
        """
        if not self.is_enabled:
            raise RuntimeError("Cloud Tasks not enabled: REVIEW_WORKER_URL is unset")

        client = self._get_client()
        parent = client.queue_path(self._project, self._location, self._queue)
        try:
            response = client.create_task(parent=parent, task=self._build_task(parent, job))
        except AlreadyExists:
            logger.info(
                "Cloud Task for delivery %s already exists (trace_id=%s)", job.delivery_id, job.trace_id
            )
            return None
        except GoogleAPICallError as exc:
            raise ExternalServiceError(
                f"Cloud Tasks rejected review job {job.delivery_id}: {exc}"
            ) from exc

        logger.info("Dispatched Cloud Task: %s (trace_id=%s)", response.name, job.trace_id)
        return response.name

    async def enqueue(self, job: ReviewJob) -> bool:
        task_name = await asyncio.to_thread(self.dispatch_review, job)
        return task_name is not None
