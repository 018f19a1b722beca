"""
PR review pipeline: fetch diff → sanitize → prompt units → LLM review →
aggregate → policy → persist → post.

``execute_pr_review`` runs one attempt of a review job. Errors that should
fail the attempt propagate to the caller (job runner or Cloud Tasks worker);
posting and usage tracking failures are logged and swallowed.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from common.diff_parser import sanitize_diff
from common.errors import NoReviewProducedError
from common.firebase_models import ReviewRecord
from common.github_client import GitHubClient
from common.job_models import ReviewJob
from common.review_store import ReviewStore
from api.utils.comment_formatter import format_review_body, split_inline_findings
from reviewagent.agent.review_pipeline import ReviewEngine
from reviewagent.aggregator import aggregate_results
from reviewagent.models.agent_schemas import AggregatedReview, PolicyDecision
from reviewagent.policy import evaluate_policy, review_event
from reviewagent.prompts import build_prompt_units

logger = logging.getLogger(__name__)


@dataclass
class ReviewDependencies:
    github: GitHubClient
    engine: ReviewEngine
    store: ReviewStore
    max_tokens_per_request: int = 5000


@dataclass
class ReviewOutcome:
    review_id: Optional[str] = None
    review: Optional[AggregatedReview] = None
    decision: Optional[PolicyDecision] = None
    posted: bool = False
    skipped_reason: Optional[str] = None


def _review_status(review: AggregatedReview) -> str:
    if review.is_partial:
        return "partial"
    return "issues" if review.findings else "clean"


async def execute_pr_review(job: ReviewJob, deps: ReviewDependencies) -> ReviewOutcome:
    """Run the full review pipeline for one pull request.

    Raises:
        NoReviewProducedError: every review unit failed.
        GitHubAuthError / ExternalServiceError: fetching the pull request failed.
    """
    pr = job.pr_data
    trace_id = job.trace_id
    started = time.monotonic()
    tag = f"{pr.repository}#{pr.pull_request_number} trace_id={trace_id}"

    logger.info(f"review_start {tag} action={pr.action}")

    # ── 1. Repository settings ────────────────────────────────────────────
    repo = deps.store.find_or_create_repo(pr.repository, installation_id=pr.installation_id)
    if not repo.settings.enabled:
        logger.info(f"review_skipped {tag}: reviews disabled for repository")
        return ReviewOutcome(skipped_reason="disabled")

    # ── 2. Fetch diff and file metadata ───────────────────────────────────
    logger.info(f"diff_fetch_start {tag}")
    raw_diff, files_metadata = await deps.github.fetch_pr_changes(pr)
    logger.info(f"diff_fetch_success {tag} chars={len(raw_diff)} files={len(files_metadata)}")

    # ── 3. Sanitize ───────────────────────────────────────────────────────
    sanitized = sanitize_diff(raw_diff, files_metadata)
    if not sanitized.files:
        logger.info(f"review_skipped {tag}: no reviewable changes")
        return ReviewOutcome(skipped_reason="empty")
    logger.info(
        f"diff_sanitized {tag} files={sanitized.total_files} bytes={sanitized.total_changes}"
    )

    # ── 4. Prompt units ───────────────────────────────────────────────────
    units = build_prompt_units(pr, sanitized.files, repo.settings, deps.max_tokens_per_request)

    # ── 5. LLM review ─────────────────────────────────────────────────────
    logger.info(f"llm_analysis_start {tag} units={len(units)}")
    results = await deps.engine.review_units(units)
    review = aggregate_results(results)
    if review is None:
        raise NoReviewProducedError(
            f"All {len(results)} review calls failed for {pr.repository}#{pr.pull_request_number}"
        )
    logger.info(
        f"llm_analysis_success {tag} findings={len(review.findings)} "
        f"risk={review.risk_score} coverage={review.coverage}"
    )

    # ── 6. Policy ─────────────────────────────────────────────────────────
    policy = deps.store.get_policy(repo.id)
    decision = evaluate_policy(review, policy)
    logger.info(f"policy_evaluation_complete {tag} blocked={decision.is_blocked}")

    # ── 7. Persist ────────────────────────────────────────────────────────
    record = ReviewRecord(
        repo_id=repo.id,
        pr_number=pr.pull_request_number,
        title=pr.title,
        author=pr.author,
        risk_score=review.risk_score,
        total_tokens=review.usage.total_tokens,
        processing_time_ms=int((time.monotonic() - started) * 1000),
        status=_review_status(review),
        policy_decision=decision,
        failed_units=review.failed_units,
        trace_id=trace_id,
    )
    review_id = deps.store.save_review(repo.id, record)
    deps.store.save_findings(repo.id, review_id, review.findings)
    deps.store.track_usage(repo.id, review.usage.total_tokens)
    logger.info(f"review_persisted {tag} review_id={review_id}")

    # ── 8. Post to GitHub ─────────────────────────────────────────────────
    comments, body_findings = split_inline_findings(review.findings, files_metadata)
    body = format_review_body(review, decision, pr.pull_request_number, body_findings)
    posted = await deps.github.post_review(pr, body, review_event(decision), comments)

    logger.info(
        f"review_complete {tag} review_id={review_id} posted={posted} "
        f"elapsed_ms={int((time.monotonic() - started) * 1000)}"
    )
    return ReviewOutcome(review_id=review_id, review=review, decision=decision, posted=posted)
