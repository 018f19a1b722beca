"""Repository policy evaluation: decide whether a review blocks the PR."""

from typing import Literal, Optional

from reviewagent.models.agent_schemas import AggregatedReview, Policy, PolicyDecision

ReviewEvent = Literal["REQUEST_CHANGES", "COMMENT"]

_BLOCKING_SECURITY_SEVERITIES = {"high", "critical"}


def evaluate_policy(review: AggregatedReview, policy: Optional[Policy]) -> PolicyDecision:
    """Collect every blocking reason; any single reason blocks. No policy never blocks."""
    if policy is None:
        return PolicyDecision(is_blocked=False, reason="")

    reasons: list[str] = []

    if review.risk_score > policy.block_risk_threshold:
        reasons.append(
            f"Risk score {review.risk_score} exceeds threshold of {policy.block_risk_threshold}"
        )

    if policy.block_on_high_severity_security and any(
        f.category == "security" and f.severity in _BLOCKING_SECURITY_SEVERITIES
        for f in review.findings
    ):
        reasons.append("High-severity security vulnerability detected")

    if policy.max_issue_count is not None and len(review.findings) > policy.max_issue_count:
        reasons.append(
            f"{len(review.findings)} issues found, more than the allowed {policy.max_issue_count}"
        )

    return PolicyDecision(is_blocked=bool(reasons), reason=". ".join(reasons))


def review_event(decision: PolicyDecision) -> ReviewEvent:
    """Map a decision onto the GitHub review verb."""
    return "REQUEST_CHANGES" if decision.is_blocked else "COMMENT"
