"""Anthropic LLM provider adapter.

Wraps the ``anthropic`` async client to implement :class:`ILLMProvider`
via the Claude Messages API.

Key differences from the OpenAI adapter:
    - System prompt is a separate parameter, not a message in the list
    - Response content is a list of blocks, so text blocks are joined
    - Streaming uses the SDK's ``messages.stream`` context manager, whose
      final message carries the usage totals
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import anthropic
import structlog

from src.config.settings import Settings
from src.interfaces.llm_provider import ILLMProvider
from src.models.llm import LLMCompletion, StreamDelta
from src.models.usage import TokenUsage
from src.providers.error_mapping import map_sdk_error
from src.utils.errors import LLMError

logger = structlog.get_logger(logger_name=__name__)


class AnthropicLLMProvider(ILLMProvider):
    """LLM provider backed by the Anthropic Claude API."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._api_key = settings.anthropic_api_key
        self._client = anthropic.AsyncAnthropic(
            api_key=self._api_key,
            timeout=settings.llm_timeout_seconds,
        )
        self._model = settings.anthropic_chat_model or "claude-3-5-sonnet-20241022"

    # ------------------------------------------------------------------
    # ILLMProvider implementation
    # ------------------------------------------------------------------

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        model: str | None = None,
    ) -> LLMCompletion:
        """Generate a completion via the Anthropic Messages API."""
        model_name = model or self._model
        try:
            response = await self._client.messages.create(
                model=model_name,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                temperature=temperature,
            )
        except anthropic.APIError as exc:
            raise map_sdk_error(exc, self.get_provider_name(), LLMError, "Anthropic") from exc

        text_blocks = [block.text for block in response.content if block.type == "text"]
        if not text_blocks:
            raise LLMError(
                message="Anthropic returned no text content",
                provider_name=self.get_provider_name(),
            )
        usage = TokenUsage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        logger.info(
            "anthropic_completion",
            model=model_name,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        return LLMCompletion(
            content="\n".join(text_blocks),
            usage=usage,
            provider=self.get_provider_name(),
            model=model_name,
            finish_reason=response.stop_reason,
        )

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        model: str | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream text deltas, then one item with the final usage."""
        model_name = model or self._model
        try:
            async with self._client.messages.stream(
                model=model_name,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                temperature=temperature,
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield StreamDelta(text=text)
                final = await stream.get_final_message()
        except anthropic.APIError as exc:
            raise map_sdk_error(exc, self.get_provider_name(), LLMError, "Anthropic") from exc

        usage = TokenUsage(
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
        )
        logger.info(
            "anthropic_stream_complete",
            model=model_name,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        yield StreamDelta(usage=usage)

    def supports_chat(self) -> bool:
        return True

    def supports_streaming(self) -> bool:
        return True

    def get_default_model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        """Return ``True`` if an Anthropic API key is configured."""
        return bool(self._api_key)

    async def validate_credentials(self) -> bool:
        """Try a minimal completion to verify the API key works."""
        if not self.is_available():
            return False
        try:
            await self._client.messages.create(
                model=self._model,
                max_tokens=10,
                messages=[{"role": "user", "content": "hi"}],
            )
            return True
        except anthropic.APIError:
            return False

    def get_provider_name(self) -> str:
        return "anthropic"
