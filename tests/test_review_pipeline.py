"""Tests for strict model-output parsing and the sequential review engine."""

import asyncio

import pytest

from common.errors import ExternalServiceError, ExternalTimeoutError, ModelContractError
from reviewagent.agent.review_pipeline import (
    ContractViolation,
    ParsedReview,
    ReviewEngine,
    parse_model_output,
)
from reviewagent.models.agent_schemas import PromptUnit
from tests.conftest import FakeCompletionClient, review_json

ISSUE = {
    "file": "src/app.py",
    "line": 2,
    "category": "security",
    "severity": "high",
    "title": "SQL injection",
    "description": "User input concatenated into SQL",
    "suggestion": "Use bound parameters",
}


def unit(filename="src/app.py", chunk_index=None):
    return PromptUnit(filename=filename, prompt=f"review {filename}", chunk_index=chunk_index)


async def no_sleep(_delay):
    return None


# ---------------------------------------------------------------------------
# parse_model_output
# ---------------------------------------------------------------------------


class TestParseModelOutput:
    def test_valid_review(self):
        result = parse_model_output(review_json("Risky change", [ISSUE]))
        assert isinstance(result, ParsedReview)
        assert result.summary == "Risky change"
        assert len(result.findings) == 1
        assert result.findings[0].severity == "high"

    def test_model_risk_score_is_not_carried(self):
        result = parse_model_output(review_json(risk_score=99))
        assert isinstance(result, ParsedReview)
        assert not hasattr(result, "risk_score")

    def test_fenced_json_is_a_violation(self):
        result = parse_model_output("```json\n" + review_json() + "\n```")
        assert isinstance(result, ContractViolation)
        assert "not valid JSON" in result.reason

    def test_prose_is_a_violation(self):
        assert isinstance(parse_model_output("Here is my review: looks good"), ContractViolation)

    def test_non_object_is_a_violation(self):
        result = parse_model_output("[1, 2, 3]")
        assert isinstance(result, ContractViolation)
        assert "not an object" in result.reason

    def test_missing_issues_is_a_violation(self):
        result = parse_model_output('{"summary": "ok"}')
        assert isinstance(result, ContractViolation)
        assert result.reason.startswith("schema violation")

    def test_issue_without_description_is_a_violation(self):
        result = parse_model_output(review_json(issues=[{"file": "a.py", "severity": "low"}]))
        assert isinstance(result, ContractViolation)

    def test_type_and_message_spelling_accepted(self):
        issue = {"file": "a.py", "line": "4", "type": "Best Practice", "severity": "MEDIUM", "message": "Use a context manager"}
        result = parse_model_output(review_json(issues=[issue]))
        finding = result.findings[0]
        assert finding.category == "best-practice"
        assert finding.severity == "medium"
        assert finding.line == 4
        assert finding.description == "Use a context manager"

    def test_unknown_category_and_severity_are_normalized(self):
        issue = {"file": "a.py", "category": "style", "severity": "blocker", "description": "x"}
        finding = parse_model_output(review_json(issues=[issue])).findings[0]
        assert finding.category == "quality"
        assert finding.severity == "low"


# ---------------------------------------------------------------------------
# ReviewEngine
# ---------------------------------------------------------------------------


class TestReviewUnit:
    async def test_success_on_first_call(self):
        client = FakeCompletionClient([review_json("fine", [ISSUE])])
        result = await ReviewEngine(client, sleep=no_sleep).review_unit(unit())
        assert not result.failed
        assert result.summary == "fine"
        assert result.usage.total_tokens == 15
        assert len(client.prompts) == 1

    async def test_retries_once_on_malformed_output(self):
        client = FakeCompletionClient(["not json", review_json("second try")])
        result = await ReviewEngine(client, sleep=no_sleep).review_unit(unit())
        assert result.summary == "second try"
        assert client.prompts == ["review src/app.py", "review src/app.py"]
        assert result.usage.total_tokens == 30

    async def test_second_violation_raises_contract_error(self):
        client = FakeCompletionClient(["not json", "still not json"])
        with pytest.raises(ModelContractError) as exc_info:
            await ReviewEngine(client, sleep=no_sleep).review_unit(unit())
        assert exc_info.value.raw_output == "still not json"
        assert exc_info.value.retryable is False

    async def test_hanging_call_becomes_timeout(self):
        class HangingClient:
            async def complete(self, prompt):
                await asyncio.sleep(10)

        engine = ReviewEngine(HangingClient(), call_timeout=0.01, sleep=no_sleep)
        with pytest.raises(ExternalTimeoutError):
            await engine.review_unit(unit())


class TestReviewUnits:
    async def test_failed_unit_is_recorded_and_batch_continues(self):
        client = FakeCompletionClient([
            review_json("chunk zero", [ISSUE]),
            ExternalServiceError("LLM API error 502"),
        ])
        results = await ReviewEngine(client, sleep=no_sleep).review_units(
            [unit(chunk_index=0), unit(chunk_index=1)]
        )
        assert [r.failed for r in results] == [False, True]
        assert results[1].error == "ExternalServiceError: LLM API error 502"
        assert results[1].findings == []

    async def test_delay_between_calls_but_not_after_last(self):
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        client = FakeCompletionClient([review_json(), review_json(), review_json()])
        engine = ReviewEngine(client, delay_between_calls=1.5, sleep=record_sleep)
        await engine.review_units([unit("a.py"), unit("b.py"), unit("c.py")])
        assert delays == [1.5, 1.5]

    async def test_units_are_reviewed_in_order(self):
        client = FakeCompletionClient([review_json(), review_json()])
        await ReviewEngine(client, sleep=no_sleep).review_units([unit("z.py"), unit("a.py")])
        assert client.prompts == ["review z.py", "review a.py"]
