"""Review persistence.

The pipeline depends on ``ReviewStore``, not on a concrete backend.
``FirestoreReviewStore`` is used in deployment; ``InMemoryReviewStore``
backs local development and tests.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from firebase_admin import firestore
from pydantic import BaseModel

from common.config import ServiceSettings, get_settings
from common.firebase_init import get_firestore_client
from common.firebase_models import FindingRecord, PolicyDocument, RepoRecord, ReviewRecord
from reviewagent.models.agent_schemas import Policy, ReviewFinding

logger = logging.getLogger(__name__)


def repo_id_for(repository: str) -> str:
    """``owner/repo`` -> ``owner_repo`` (document id of the repository)."""
    return repository.replace("/", "_")


def _to_dict(data: BaseModel) -> dict[str, Any]:
    """Serialize a model with its camelCase aliases, dropping unset optionals."""
    return data.model_dump(by_alias=True, exclude_none=True, mode="json")


def _usage_period() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m")


class ReviewStore(ABC):
    """Narrow read/write interface used by the review pipeline and the webhook."""

    @abstractmethod
    def find_or_create_repo(
        self,
        repository: str,
        installation_id: Optional[int] = None,
        github_id: Optional[int] = None,
    ) -> RepoRecord:
        """Return the repository record, creating it with default settings on first sight."""

    @abstractmethod
    def get_policy(self, repo_id: str) -> Optional[Policy]:
        """Return the repository policy, or ``None`` when none is configured."""

    @abstractmethod
    def save_policy(self, repo_id: str, policy: Policy) -> None:
        """Replace the repository policy."""

    @abstractmethod
    def save_review(self, repo_id: str, review: ReviewRecord) -> str:
        """Persist a review record and return its id."""

    @abstractmethod
    def save_findings(self, repo_id: str, review_id: str, findings: list[ReviewFinding]) -> int:
        """Persist the findings of a review. Returns the number written."""

    @abstractmethod
    def _increment_usage(self, repo_id: str, period: str, tokens: int) -> None:
        ...

    def track_usage(self, repo_id: str, tokens: int) -> None:
        """Add to the monthly usage counters. Failures are logged, never raised."""
        try:
            self._increment_usage(repo_id, _usage_period(), tokens)
        except Exception as exc:
            logger.warning("Failed to track usage for %s: %s", repo_id, exc)

    @abstractmethod
    def upsert_installation_repo(
        self,
        repository: str,
        installation_id: int,
        github_id: Optional[int] = None,
    ) -> RepoRecord:
        """Record that the App is installed on ``repository``."""

    @abstractmethod
    def remove_repo(self, repository: str) -> None:
        """Delete the repository record after the App lost access to it."""


class FirestoreReviewStore(ReviewStore):
    """
    Firestore layout::

        repositories/{owner}_{repo}
        repositories/{owner}_{repo}/config/policy
        repositories/{owner}_{repo}/reviews/{review_id}
        repositories/{owner}_{repo}/reviews/{review_id}/findings/{n}
        usage/{owner}_{repo}_{YYYY-MM}
    """

    def __init__(self, db=None):
        self._db = db or get_firestore_client()

    def _repo_ref(self, repo_id: str):
        return self._db.collection("repositories").document(repo_id)

    def find_or_create_repo(self, repository, installation_id=None, github_id=None) -> RepoRecord:
        repo_id = repo_id_for(repository)
        doc_ref = self._repo_ref(repo_id)
        doc = doc_ref.get()
        if doc.exists:
            record = RepoRecord.model_validate({**doc.to_dict(), "id": repo_id})
            if installation_id is not None and record.installation_id != installation_id:
                doc_ref.update({"installationId": installation_id})
                record.installation_id = installation_id
            return record

        record = RepoRecord(
            id=repo_id,
            name=repository,
            owner=repository.split("/", 1)[0],
            github_id=github_id,
            installation_id=installation_id,
        )
        doc_ref.set(_to_dict(record))
        logger.info(f"Created repository record for {repository}")
        return record

    def get_policy(self, repo_id: str) -> Optional[Policy]:
        doc = self._repo_ref(repo_id).collection("config").document("policy").get()
        if not doc.exists:
            return None
        stored = PolicyDocument.model_validate(doc.to_dict())
        return Policy.model_validate(stored.model_dump(include=set(Policy.model_fields)))

    def save_policy(self, repo_id: str, policy: Policy) -> None:
        document = PolicyDocument(**policy.model_dump())
        self._repo_ref(repo_id).collection("config").document("policy").set(_to_dict(document))
        logger.info(f"Saved policy for {repo_id}")

    def save_review(self, repo_id: str, review: ReviewRecord) -> str:
        doc_ref = self._repo_ref(repo_id).collection("reviews").document()
        doc_ref.set(_to_dict(review))
        logger.info(f"Saved review {doc_ref.id} for {repo_id}#{review.pr_number}")
        return doc_ref.id

    def save_findings(self, repo_id: str, review_id: str, findings: list[ReviewFinding]) -> int:
        if not findings:
            return 0
        findings_ref = (
            self._repo_ref(repo_id)
            .collection("reviews")
            .document(review_id)
            .collection("findings")
        )
        batch = self._db.batch()
        for index, finding in enumerate(findings):
            record = FindingRecord(**finding.model_dump(), review_id=review_id)
            batch.set(findings_ref.document(str(index)), _to_dict(record))
        batch.commit()
        return len(findings)

    def _increment_usage(self, repo_id: str, period: str, tokens: int) -> None:
        self._db.collection("usage").document(f"{repo_id}_{period}").set(
            {
                "repoId": repo_id,
                "period": period,
                "totalTokens": firestore.Increment(tokens),
                "reviewCount": firestore.Increment(1),
            },
            merge=True,
        )

    def upsert_installation_repo(self, repository, installation_id, github_id=None) -> RepoRecord:
        return self.find_or_create_repo(repository, installation_id=installation_id, github_id=github_id)

    def remove_repo(self, repository: str) -> None:
        repo_ref = self._repo_ref(repo_id_for(repository))
        repo_ref.collection("config").document("policy").delete()
        repo_ref.delete()
        logger.info(f"Removed repository record for {repository}")


class InMemoryReviewStore(ReviewStore):
    """Dict-backed store for local runs and tests."""

    def __init__(self):
        self.repos: dict[str, RepoRecord] = {}
        self.policies: dict[str, Policy] = {}
        self.reviews: dict[str, tuple[str, ReviewRecord]] = {}
        self.findings: dict[str, list[ReviewFinding]] = {}
        self.usage: dict[tuple[str, str], dict[str, int]] = {}

    def find_or_create_repo(self, repository, installation_id=None, github_id=None) -> RepoRecord:
        repo_id = repo_id_for(repository)
        record = self.repos.get(repo_id)
        if record is None:
            record = RepoRecord(
                id=repo_id,
                name=repository,
                owner=repository.split("/", 1)[0],
                github_id=github_id,
                installation_id=installation_id,
            )
            self.repos[repo_id] = record
        elif installation_id is not None:
            record.installation_id = installation_id
        return record

    def get_policy(self, repo_id: str) -> Optional[Policy]:
        return self.policies.get(repo_id)

    def save_policy(self, repo_id: str, policy: Policy) -> None:
        self.policies[repo_id] = policy

    def save_review(self, repo_id: str, review: ReviewRecord) -> str:
        review_id = uuid.uuid4().hex
        self.reviews[review_id] = (repo_id, review)
        return review_id

    def save_findings(self, repo_id: str, review_id: str, findings: list[ReviewFinding]) -> int:
        self.findings[review_id] = list(findings)
        return len(findings)

    def _increment_usage(self, repo_id: str, period: str, tokens: int) -> None:
        counters = self.usage.setdefault((repo_id, period), {"totalTokens": 0, "reviewCount": 0})
        counters["totalTokens"] += tokens
        counters["reviewCount"] += 1

    def upsert_installation_repo(self, repository, installation_id, github_id=None) -> RepoRecord:
        return self.find_or_create_repo(repository, installation_id=installation_id, github_id=github_id)

    def remove_repo(self, repository: str) -> None:
        repo_id = repo_id_for(repository)
        self.repos.pop(repo_id, None)
        self.policies.pop(repo_id, None)


def create_store(settings: Optional[ServiceSettings] = None) -> ReviewStore:
    settings = settings or get_settings()
    if settings.store_backend == "memory":
        logger.warning("Using in-memory review store; reviews are not persisted")
        return InMemoryReviewStore()
    return FirestoreReviewStore()
