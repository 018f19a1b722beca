from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from reviewagent.models.agent_schemas import Policy, PolicyDecision, ReviewFinding


def _fb(alias: str, default=None, **kwargs):
    """
    Create a Pydantic Field with a camelCase alias for Firestore-style documents.

    Parameters:
        alias (str): The camelCase name to use when serializing the field.
        default: Default value for the field (optional).
        **kwargs: Additional keyword arguments forwarded to `pydantic.Field`.

    Returns:
        pydantic.fields.FieldInfo: A Field whose `alias` (used for reading and writing) is `alias`.
    """
    if "default_factory" in kwargs:
        return Field(alias=alias, **kwargs)
    return Field(default, alias=alias, **kwargs)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class RepoSettings(BaseModel):
    """Review switches stored on the repository document."""

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = True
    strict_mode: bool = _fb("strictMode", False)
    ignore_styling: bool = _fb("ignoreStyling", False)
    ignore_linter: bool = _fb("ignoreLinter", False)


class RepoRecord(BaseModel):
    """
    Repository document.

    Stored at: repositories/{owner}_{repo}
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str  # "owner/repo"
    owner: Optional[str] = None
    github_id: Optional[int] = _fb("githubId")
    installation_id: Optional[int] = _fb("installationId")
    settings: RepoSettings = Field(default_factory=RepoSettings)
    created_at: str = _fb("createdAt", default_factory=_utcnow)


class PolicyDocument(Policy):
    """
    Policy document.

    Stored at: repositories/{owner}_{repo}/config/policy
    """

    model_config = ConfigDict(populate_by_name=True)

    updated_at: str = _fb("updatedAt", default_factory=_utcnow)


class ReviewRecord(BaseModel):
    """
    Review document saved after each completed review.

    Stored at: repositories/{owner}_{repo}/reviews/{review_id}
    """

    model_config = ConfigDict(populate_by_name=True)

    repo_id: str = _fb("repoId", ...)
    pr_number: int = _fb("prNumber", ...)
    title: str = ""
    author: str = ""
    risk_score: int = _fb("riskScore", 0)
    total_tokens: int = _fb("totalTokens", 0)
    processing_time_ms: int = _fb("processingTimeMs", 0)
    status: Literal["clean", "issues", "partial"] = "clean"
    policy_decision: PolicyDecision = _fb("policyDecision", default_factory=PolicyDecision)
    failed_units: list[str] = _fb("failedUnits", default_factory=list)
    trace_id: Optional[str] = _fb("traceId")
    created_at: str = _fb("createdAt", default_factory=_utcnow)


class FindingRecord(ReviewFinding):
    """
    Finding document, one per de-duplicated finding.

    Stored at: repositories/{owner}_{repo}/reviews/{review_id}/findings/{n}
    """

    model_config = ConfigDict(populate_by_name=True)

    review_id: str = _fb("reviewId", ...)
