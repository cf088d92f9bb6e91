"""Text generation used by llm_call actions, llm_decision conditions and search summaries."""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Union

import httpx
from pydantic_ai import Agent
from pydantic_ai.exceptions import AgentRunError
from pydantic_ai.models import Model

from .constants import DEFAULT_LLM_MAX_TOKENS
from .errors import TransportError

logger = logging.getLogger(__name__)


class TextGenerationService(Protocol):
    async def generate(
        self, prompt: str, max_tokens: Optional[int] = None, model: Optional[str] = None
    ) -> str:
        """Return the completion text for ``prompt``.

        ``max_tokens`` of ``None`` means the service's configured default.
        """


class PydanticAITextGenerator(TextGenerationService):
    """Default text generator backed by a plain-text :class:`pydantic_ai.Agent`.

    ``model`` is anything ``Agent`` accepts, e.g. ``"anthropic:claude-sonnet-4-0"``
    or ``"test"``. Agents are built on first use, one per model.
    """

    def __init__(
        self,
        model: Union[str, Model] = "test",
        system_prompt: str = "",
        max_tokens: int = DEFAULT_LLM_MAX_TOKENS,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self._agents: dict[str, Agent] = {}

    def _agent_for(self, model: Union[str, Model]) -> Agent:
        key = model if isinstance(model, str) else str(id(model))
        if key not in self._agents:
            self._agents[key] = Agent(
                model, output_type=str, system_prompt=self.system_prompt or ()
            )
        return self._agents[key]

    async def generate(
        self, prompt: str, max_tokens: Optional[int] = None, model: Optional[str] = None
    ) -> str:
        agent = self._agent_for(model or self.model)
        limit = max_tokens or self.max_tokens
        logger.debug(f"Generating text, prompt length={len(prompt)} max_tokens={limit}")
        try:
            result = await agent.run(prompt, model_settings={"max_tokens": limit})
        except (AgentRunError, httpx.HTTPError) as exc:
            raise TransportError(f"Text generation failed: {exc}") from exc
        return result.output
