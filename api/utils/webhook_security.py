"""GitHub webhook signature check and pull request payload extraction."""

import hashlib
import hmac
import logging
from typing import Any, Optional

from common.errors import WebhookPayloadError
from common.job_models import PRData

logger = logging.getLogger(__name__)

REVIEWED_PR_ACTIONS = frozenset({"opened", "reopened", "synchronize"})
_SIGNATURE_PREFIX = "sha256="


def verify_signature(body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """Check ``X-Hub-Signature-256`` against the HMAC-SHA256 of the raw body."""
    if not secret:
        logger.error("GITHUB_WEBHOOK_SECRET is not configured; rejecting webhook")
        return False
    if not signature_header or not signature_header.startswith(_SIGNATURE_PREFIX):
        return False

    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    received = signature_header[len(_SIGNATURE_PREFIX):]
    return hmac.compare_digest(expected, received)


def extract_pull_request_data(payload: Any, trace_id: Optional[str] = None) -> Optional[PRData]:
    """
    Build ``PRData`` from a ``pull_request`` webhook payload.

    Returns ``None`` for actions that do not trigger a review.

    Raises:
        WebhookPayloadError: the payload lacks the pull request, the repository
            or one of the required fields.
    """
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook payload is not a JSON object")

    pr = payload.get("pull_request")
    repo = payload.get("repository")
    if not isinstance(pr, dict) or not isinstance(repo, dict):
        raise WebhookPayloadError("Payload is missing pull_request or repository")

    action = payload.get("action", "")
    if action not in REVIEWED_PR_ACTIONS:
        logger.info(f"Pull request action '{action}' ignored")
        return None

    repository = repo.get("full_name") or ""
    number = pr.get("number") or 0
    title = pr.get("title") or ""
    author = (pr.get("user") or {}).get("login") or ""

    missing = [
        name
        for name, value in (
            ("repository", repository),
            ("number", number),
            ("title", title),
            ("author", author),
        )
        if not value
    ]
    if missing or "/" not in repository or not isinstance(number, int):
        raise WebhookPayloadError(f"Missing or invalid pull request fields: {', '.join(missing) or 'repository/number'}")

    installation = payload.get("installation") or {}
    return PRData(
        repository=repository,
        pull_request_number=number,
        title=title,
        author=author,
        action=action,
        installation_id=installation.get("id"),
        head_sha=(pr.get("head") or {}).get("sha"),
        trace_id=trace_id,
    )
