"""Review engine: one strict-JSON model call per prompt unit."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence, Union

from pydantic import ValidationError

from common.errors import ExternalTimeoutError, ModelContractError
from reviewagent.agent.llm_client import Completion, CompletionClient
from reviewagent.config import config
from reviewagent.models.agent_schemas import (
    ModelReview,
    PromptUnit,
    ReviewFinding,
    TokenUsage,
    UnitResult,
)

logger = logging.getLogger(__name__)

# One in-place retry for output that breaks the JSON contract.
CONTRACT_RETRIES = 1


@dataclass
class ParsedReview:
    summary: str
    findings: list[ReviewFinding] = field(default_factory=list)


@dataclass
class ContractViolation:
    reason: str
    raw_output: str = ""


ParseResult = Union[ParsedReview, ContractViolation]


def parse_model_output(text: str) -> ParseResult:
    """
    Validate raw model output against the review contract.

    The whole text must be one JSON object; fenced or prefixed output is a
    violation. The model's ``risk_score`` is validated but dropped.
    """
    try:
        payload = json.loads(text)
    except (TypeError, json.JSONDecodeError) as exc:
        return ContractViolation(reason=f"not valid JSON: {exc}", raw_output=text or "")

    if not isinstance(payload, dict):
        return ContractViolation(reason="top-level JSON value is not an object", raw_output=text)

    try:
        review = ModelReview.model_validate(payload)
    except ValidationError as exc:
        return ContractViolation(
            reason=f"schema violation: {exc.error_count()} error(s): {exc.errors()[0]['msg']}",
            raw_output=text,
        )

    return ParsedReview(
        summary=review.summary.strip(),
        findings=[issue.to_finding() for issue in review.issues],
    )


class ReviewEngine:
    """Run prompt units through the model, sequentially, with a fixed delay."""

    def __init__(
        self,
        client: CompletionClient,
        delay_between_calls: float = 1.0,
        call_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._delay = delay_between_calls
        self._timeout = call_timeout if call_timeout is not None else config.llm_timeout_seconds
        self._sleep = sleep

    async def _complete(self, unit: PromptUnit) -> Completion:
        try:
            return await asyncio.wait_for(self._client.complete(unit.prompt), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalTimeoutError(
                f"LLM call for {unit.filename} timed out after {self._timeout}s"
            ) from exc

    async def review_unit(self, unit: PromptUnit) -> UnitResult:
        """
        Review one unit. Malformed output is retried once with the same prompt;
        a second violation raises ``ModelContractError``. Usage of every call
        made, including rejected ones, is counted.
        """
        usage = TokenUsage()
        violation: Optional[ContractViolation] = None

        for attempt in range(CONTRACT_RETRIES + 1):
            completion = await self._complete(unit)
            usage = usage + completion.usage
            parsed = parse_model_output(completion.text)
            if isinstance(parsed, ParsedReview):
                return UnitResult(
                    filename=unit.filename,
                    chunk_index=unit.chunk_index,
                    summary=parsed.summary,
                    findings=parsed.findings,
                    usage=usage,
                )
            violation = parsed
            logger.warning(
                "Malformed model output for %s (attempt %d): %s",
                unit.filename, attempt + 1, parsed.reason,
            )

        raise ModelContractError(
            f"Malformed model output for {unit.filename}: {violation.reason}",
            raw_output=violation.raw_output,
        )

    async def review_units(self, units: Sequence[PromptUnit]) -> list[UnitResult]:
        """
        Review every unit in order. A failing unit is recorded as failed and
        the batch moves on; retrying whole batches is left to the job runner.
        """
        results: list[UnitResult] = []

        for index, unit in enumerate(units):
            try:
                results.append(await self.review_unit(unit))
            except Exception as exc:
                logger.error("Review unit %s failed: %s", unit.filename, exc)
                results.append(
                    UnitResult(
                        filename=unit.filename,
                        chunk_index=unit.chunk_index,
                        failed=True,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                )

            if index < len(units) - 1 and self._delay > 0:
                await self._sleep(self._delay)

        return results
