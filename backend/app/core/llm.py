"""Thin async wrapper around the hosted chat-completions API.

Normalizes provider responses into a CompletionResult so route handlers
never touch SDK types, and maps SDK failures onto LLMError.
"""

import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from app.config import get_settings
from app.exceptions import ConfigurationError, LLMError

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    """Normalized result of one chat completion."""

    text: str = ""
    model_used: str = "unknown"
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    latency_ms: int = 0


class LLMClient:
    """Chat-completions client configured from Settings."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        temperature: float = 0.2,
        timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._client: Optional[AsyncOpenAI] = (
            AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0) if api_key else None
        )

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def complete(
        self, messages: list[dict[str, str]], max_tokens: int
    ) -> CompletionResult:
        """Run one completion. max_tokens is a hard per-request cost cap.

        Raises:
            ConfigurationError: No API key configured.
            LLMError: The provider call failed.
        """
        if self._client is None:
            raise ConfigurationError("OPENAI_API_KEY is not set")

        start = time.time()
        try:
            completion = await self._client.chat.completions.create(
                model=self._model,
                temperature=self._temperature,
                max_tokens=max_tokens,
                messages=messages,
            )
        except OpenAIError as e:
            logger.warning("Completion call failed: %s", e, extra={"model": self._model})
            raise LLMError(str(e)) from e

        latency_ms = int((time.time() - start) * 1000)
        choice = completion.choices[0] if completion.choices else None
        text = (choice.message.content if choice and choice.message else None) or ""
        usage = completion.usage
        return CompletionResult(
            text=text or "No reply returned",
            model_used=completion.model or self._model,
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
            latency_ms=latency_ms,
        )


@lru_cache(maxsize=1)
def get_llm_client() -> LLMClient:
    """FastAPI dependency: cached client built from Settings."""
    settings = get_settings()
    return LLMClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        temperature=settings.openai_temperature,
        timeout=settings.openai_timeout_seconds,
    )
