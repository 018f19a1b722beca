
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from api.dependencies import get_job_queue, get_review_store
from api.models.schemas import WebhookResponse
from api.utils.webhook_security import extract_pull_request_data, verify_signature
from common.config import ServiceSettings, get_settings
from common.errors import WebhookPayloadError
from common.job_models import ReviewJob
from common.job_runner import JobQueue
from common.review_store import ReviewStore

logger = logging.getLogger(__name__)

router = APIRouter()


def _repo_full_name(repo: dict) -> str:
    full_name = repo.get("full_name") if isinstance(repo, dict) else None
    if not full_name:
        raise WebhookPayloadError("Repository entry without full_name")
    return full_name


def _handle_installation(payload: dict, store: ReviewStore, trace_id: str) -> WebhookResponse:
    """App installed on an account: sync every repository it was granted."""
    action = payload.get("action", "")
    installation_id = (payload.get("installation") or {}).get("id")
    repositories = payload.get("repositories") or []

    if action == "created" and installation_id:
        for repo in repositories:
            store.upsert_installation_repo(_repo_full_name(repo), installation_id, github_id=repo.get("id"))
        logger.info(
            f"installation_created trace_id={trace_id} installation={installation_id} "
            f"repositories={len(repositories)}"
        )
    return WebhookResponse(status="processed", message="Installation event processed", delivery_id=trace_id)


def _handle_installation_repositories(payload: dict, store: ReviewStore, trace_id: str) -> WebhookResponse:
    """Repositories added to or removed from an existing installation."""
    action = payload.get("action", "")
    installation_id = (payload.get("installation") or {}).get("id")
    added = payload.get("repositories_added") or []
    removed = payload.get("repositories_removed") or []

    if action == "added" and installation_id:
        for repo in added:
            store.upsert_installation_repo(_repo_full_name(repo), installation_id, github_id=repo.get("id"))
    if action == "removed":
        for repo in removed:
            store.remove_repo(_repo_full_name(repo))

    logger.info(
        f"installation_repositories_updated trace_id={trace_id} action={action} "
        f"added={[r.get('full_name') for r in added]} removed={[r.get('full_name') for r in removed]}"
    )
    return WebhookResponse(status="processed", message="Repositories updated", delivery_id=trace_id)


@router.post("/github", response_model=WebhookResponse)
async def github_webhook(
    request: Request,
    x_github_event: str | None = Header(default=None),
    x_hub_signature_256: str | None = Header(default=None),
    x_github_delivery: str | None = Header(default=None),
    settings: ServiceSettings = Depends(get_settings),
    queue: JobQueue = Depends(get_job_queue),
    store: ReviewStore = Depends(get_review_store),
):
    """
    Receive GitHub App webhooks.

    - pull_request (opened / reopened / synchronize): enqueue a review job keyed
      by the delivery id; a redelivered webhook is acknowledged as a duplicate
    - installation / installation_repositories: sync repositories into the store
    - everything else is acknowledged and ignored
    """
    if not x_github_event or not x_hub_signature_256 or not x_github_delivery:
        raise HTTPException(status_code=400, detail="Missing required GitHub headers")

    # The delivery id doubles as the trace id of everything this webhook triggers.
    trace_id = x_github_delivery
    body = await request.body()

    if not verify_signature(body, x_hub_signature_256, settings.github_webhook_secret):
        logger.error(f"webhook_validation_failed trace_id={trace_id}: invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    logger.info(f"Received GitHub webhook: {x_github_event} trace_id={trace_id}")

    try:
        if x_github_event == "installation":
            return _handle_installation(payload, store, trace_id)
        if x_github_event == "installation_repositories":
            return _handle_installation_repositories(payload, store, trace_id)

        if x_github_event != "pull_request":
            return WebhookResponse(
                status="ignored", message=f"Event ignored ({x_github_event})", delivery_id=trace_id
            )

        pr_data = extract_pull_request_data(payload, trace_id=trace_id)

        if pr_data is None:
            return WebhookResponse(
                status="ignored",
                message=f"Pull request action '{payload.get('action')}' ignored",
                delivery_id=trace_id,
            )

        job = ReviewJob(pr_data=pr_data, delivery_id=x_github_delivery, trace_id=trace_id)
        accepted = await queue.enqueue(job)

        if not accepted:
            return WebhookResponse(
                status="duplicate",
                message="Delivery already enqueued",
                delivery_id=trace_id,
                duplicate=True,
                repository=pr_data.repository,
                pr_number=pr_data.pull_request_number,
            )

        logger.info(
            f"webhook_pr_enqueued trace_id={trace_id} "
            f"{pr_data.repository}#{pr_data.pull_request_number}"
        )
        return WebhookResponse(
            status="enqueued",
            message="Review job enqueued successfully",
            delivery_id=trace_id,
            repository=pr_data.repository,
            pr_number=pr_data.pull_request_number,
        )
    except WebhookPayloadError as e:
        logger.warning(f"webhook_invalid_payload trace_id={trace_id}: {e}")
        raise HTTPException(status_code=400, detail=f"Invalid {x_github_event} payload")
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"webhook_error trace_id={trace_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
