"""AI client abstraction with an OpenAI Responses API backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import openai

from dagmarcom.config import OpenAIConfig
from dagmarcom.log import get_logger

logger = get_logger(__name__)


class AIProviderError(RuntimeError):
    """The provider answered with a non-success status or could not be reached."""


@dataclass
class AIResponse:
    """Unified response from any AI backend."""

    text: str
    continuation_token: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    raw: Any = None  # Backend-specific raw response


class AIClient(ABC):
    """Abstract base class for AI backends."""

    @abstractmethod
    async def complete_turn(
        self,
        instructions: str,
        developer_content: str,
        user_input: str,
        continuation_token: Optional[str] = None,
    ) -> AIResponse:
        """Generate one reply.

        *continuation_token* resumes the context of an earlier call; ``None``
        starts a fresh conversation. Raises AIProviderError on failure.
        """
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...


class OpenAIClient(AIClient):
    """OpenAI Responses API backend using the official SDK.

    The response id doubles as the continuation token and is passed back as
    ``previous_response_id`` on the next turn.
    """

    def __init__(self, config: OpenAIConfig, client: openai.AsyncOpenAI | None = None):
        self._model = config.model
        self._client = client or openai.AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )

    @property
    def model_name(self) -> str:
        return self._model

    async def complete_turn(
        self,
        instructions: str,
        developer_content: str,
        user_input: str,
        continuation_token: Optional[str] = None,
    ) -> AIResponse:
        messages: list[dict[str, str]] = []
        if developer_content:
            messages.append({"role": "developer", "content": developer_content})
        messages.append({"role": "user", "content": user_input})

        kwargs: dict[str, Any] = {
            "model": self._model,
            "input": messages,
            "metadata": {"source": "dagmarcom"},
        }
        if instructions:
            kwargs["instructions"] = instructions
        if continuation_token:
            kwargs["previous_response_id"] = continuation_token

        logger.debug(
            "api_request",
            model=self._model,
            continued=bool(continuation_token),
            input_length=len(user_input),
        )
        try:
            response = await self._client.responses.create(**kwargs)
        except openai.APIStatusError as e:
            logger.error("openai_call_failed", status=e.status_code, error=str(e))
            raise AIProviderError(f"OpenAI API error {e.status_code}") from e
        except openai.APIError as e:
            logger.error("openai_call_failed", error=str(e))
            raise AIProviderError(f"OpenAI API error: {e}") from e

        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0
        logger.debug(
            "api_response",
            model=self._model,
            response_id=response.id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        return AIResponse(
            text=response.output_text or "",
            continuation_token=response.id or None,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            raw=response,
        )
