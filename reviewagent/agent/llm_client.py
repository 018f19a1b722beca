"""Completion client used by the review engine.

The production client drives a pydantic-ai ``Agent`` against OpenRouter and
returns the raw text; validating that text is the review engine's job.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Protocol

from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.settings import ModelSettings

from common.errors import ExternalServiceError
from reviewagent.config import AgentConfig, config
from reviewagent.models.agent_schemas import TokenUsage
from reviewagent.prompts import REVIEW_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

# Fixed low temperature for categorical output. Not configurable.
REVIEW_TEMPERATURE = 0.0


@dataclass
class Completion:
    text: str
    usage: TokenUsage


class CompletionClient(Protocol):
    async def complete(self, prompt: str) -> Completion:
        ...


class PydanticAICompletionClient:
    """Send one review prompt to the configured OpenRouter model."""

    def __init__(self, agent_config: Optional[AgentConfig] = None):
        self._config = agent_config or config
        self._agent: Optional[Agent] = None

    def _get_agent(self) -> Agent:
        if self._agent is None:
            # pydantic-ai's OpenRouter provider reads the key from the environment.
            os.environ.setdefault("OPENROUTER_API_KEY", self._config.openrouter_api_key)
            self._agent = Agent(
                f"openrouter:{self._config.review_model}",
                system_prompt=REVIEW_SYSTEM_PROMPT,
                output_type=str,
                model_settings=ModelSettings(
                    temperature=REVIEW_TEMPERATURE,
                    max_tokens=self._config.llm_max_output_tokens,
                    timeout=self._config.llm_timeout_seconds,
                ),
                name="gitguard-reviewer",
            )
        return self._agent

    async def complete(self, prompt: str) -> Completion:
        try:
            result = await self._get_agent().run(prompt)
        except ModelHTTPError as exc:
            raise ExternalServiceError(
                f"LLM API error {exc.status_code} from {exc.model_name}"
            ) from exc
        except UnexpectedModelBehavior as exc:
            raise ExternalServiceError(f"LLM returned an unusable response: {exc}") from exc

        run_usage = result.usage()
        usage = TokenUsage(
            prompt_tokens=run_usage.input_tokens or 0,
            completion_tokens=run_usage.output_tokens or 0,
            total_tokens=run_usage.total_tokens or 0,
        )
        return Completion(text=result.output, usage=usage)
