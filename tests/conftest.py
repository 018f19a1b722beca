"""Shared fixtures and fakes for the GitGuard test suite."""

import json
from typing import Any, Optional

import pytest
from google.api_core.exceptions import AlreadyExists

from common.job_models import PRData, ReviewJob
from common.review_store import InMemoryReviewStore
from reviewagent.agent.llm_client import Completion
from reviewagent.models.agent_schemas import ReviewFinding, TokenUsage

# One added line at new-file line 2 of src/app.py.
SIMPLE_DIFF = (
    "diff --git a/src/app.py b/src/app.py\n"
    "index 1111111..2222222 100644\n"
    "--- a/src/app.py\n"
    "+++ b/src/app.py\n"
    "@@ -1,2 +1,3 @@\n"
    " import os\n"
    "+password = os.environ['DB_PASSWORD']\n"
    " print('ready')\n"
)
SIMPLE_PATCH = "@@ -1,2 +1,3 @@\n import os\n+password = os.environ['DB_PASSWORD']\n print('ready')\n"


def make_pr(**overrides) -> PRData:
    fields = dict(
        repository="acme/widgets",
        pull_request_number=7,
        title="Add DB config",
        author="octocat",
        action="opened",
        installation_id=42,
    )
    fields.update(overrides)
    return PRData(**fields)


def make_job(delivery_id: str = "delivery-1", **pr_overrides) -> ReviewJob:
    return ReviewJob(pr_data=make_pr(**pr_overrides), delivery_id=delivery_id, trace_id=delivery_id)


def make_finding(**overrides) -> ReviewFinding:
    fields = dict(
        file="src/app.py",
        line=2,
        category="security",
        severity="high",
        title="Hardcoded credential lookup",
        description="Password read into a module global",
        suggestion="Load it lazily from the secret manager",
    )
    fields.update(overrides)
    return ReviewFinding(**fields)


def review_json(summary: str = "Looks fine", issues: Optional[list[dict]] = None, risk_score: Any = 12) -> str:
    return json.dumps({"summary": summary, "risk_score": risk_score, "issues": issues or []})


class FakeCompletionClient:
    """Returns queued responses in order. An Exception instance is raised instead."""

    def __init__(self, responses, usage: Optional[TokenUsage] = None):
        self._responses = list(responses)
        self._usage = usage or TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15)
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> Completion:
        self.prompts.append(prompt)
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return Completion(text=response, usage=self._usage)


class FakeGitHubClient:
    def __init__(self, diff: str = SIMPLE_DIFF, files: Optional[list[dict]] = None, fetch_error=None, post_ok=True):
        self.diff = diff
        self.files = files if files is not None else [
            {"filename": "src/app.py", "status": "modified", "additions": 1, "deletions": 0,
             "changes": 1, "patch": SIMPLE_PATCH},
        ]
        self.fetch_error = fetch_error
        self.post_ok = post_ok
        self.posted: list[dict] = []

    async def fetch_pr_changes(self, pr):
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.diff, self.files

    async def post_review(self, pr, body, event="COMMENT", comments=None):
        self.posted.append({"pr": pr, "body": body, "event": event, "comments": comments or []})
        return self.post_ok


# ── Minimal Firestore double ─────────────────────────────────────────────────


class _Snapshot:
    def __init__(self, data):
        self._data = data
        self.exists = data is not None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class _FakeDocument:
    def __init__(self, docs: dict, key: str):
        self._docs = docs
        self._key = key

    def create(self, data):
        if self._key in self._docs:
            raise AlreadyExists(f"{self._key} already exists")
        self._docs[self._key] = dict(data)

    def set(self, data, merge=False):
        self._docs[self._key] = dict(data)

    def update(self, data):
        self._docs[self._key].update(data)

    def get(self):
        return _Snapshot(self._docs.get(self._key))


class _FakeCollection:
    def __init__(self):
        self.docs: dict[str, dict] = {}

    def document(self, key: str) -> _FakeDocument:
        return _FakeDocument(self.docs, key)


class FakeFirestore:
    def __init__(self):
        self.collections: dict[str, _FakeCollection] = {}

    def collection(self, name: str) -> _FakeCollection:
        return self.collections.setdefault(name, _FakeCollection())


@pytest.fixture
def store():
    return InMemoryReviewStore()


@pytest.fixture
def fake_firestore():
    return FakeFirestore()
