"""OpenAI-compatible LLM provider adapter.

Wraps the ``openai`` async client to implement :class:`ILLMProvider`.
When a custom ``openai_base_url`` is configured (e.g. TogetherAI, Anyscale,
Fireworks), the client points at that URL instead of the default OpenAI
endpoint.  Many hosted and local model servers expose this wire format, so
this adapter is also the base of the Ollama provider.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import openai
import structlog

from src.config.settings import Settings
from src.interfaces.llm_provider import ILLMProvider
from src.models.llm import LLMCompletion, StreamDelta
from src.models.usage import TokenUsage
from src.providers.error_mapping import map_sdk_error
from src.utils.errors import LLMError
from src.utils.text_normalizer import estimate_tokens

logger = structlog.get_logger(logger_name=__name__)


class OpenAILLMProvider(ILLMProvider):
    """LLM provider backed by an OpenAI-compatible chat completions API.

    Uses ``gpt-4o-mini`` by default.  Streaming requests ask the server to
    append a usage chunk (``stream_options.include_usage``) so streamed
    answers are billed from reported, not estimated, token counts.
    """

    # Servers that reject ``stream_options`` turn this off.
    _stream_reports_usage = True

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._api_key = settings.openai_api_key

        # Build client kwargs -- add base_url only when a custom endpoint is
        # configured.
        client_kwargs: dict = {
            "api_key": self._api_key,
            "timeout": openai.Timeout(settings.llm_timeout_seconds, connect=5.0),
        }
        if settings.openai_base_url:
            client_kwargs["base_url"] = settings.openai_base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._model = settings.openai_chat_model or "gpt-4o-mini"
        self._provider_label = "openai-compatible" if settings.openai_base_url else "openai"

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
        """Generate a completion via the chat completions API."""
        model_name = model or self._model
        try:
            response = await self._client.chat.completions.create(
                model=model_name,
                messages=self._messages(system_prompt, user_prompt),
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.APIError as exc:
            raise map_sdk_error(exc, self.get_provider_name(), LLMError, self._provider_label) from exc

        choice = response.choices[0] if response.choices else None
        content = choice.message.content if choice else None
        if content is None:
            raise LLMError(
                message=f"{self._provider_label} returned empty response",
                provider_name=self.get_provider_name(),
            )

        if response.usage:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens,
                output_tokens=response.usage.completion_tokens,
            )
        else:
            usage = TokenUsage(
                input_tokens=estimate_tokens(system_prompt) + estimate_tokens(user_prompt),
                output_tokens=estimate_tokens(content),
                estimated=True,
            )
        logger.info(
            "openai_completion",
            model=model_name,
            provider=self._provider_label,
            tokens=usage.total_tokens,
        )
        return LLMCompletion(
            content=content,
            usage=usage,
            provider=self.get_provider_name(),
            model=model_name,
            finish_reason=choice.finish_reason if choice else None,
        )

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        model: str | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a completion; the last item carries reported usage."""
        model_name = model or self._model
        kwargs: dict = {
            "model": model_name,
            "messages": self._messages(system_prompt, user_prompt),
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }
        if self._stream_reports_usage:
            kwargs["stream_options"] = {"include_usage": True}

        usage: TokenUsage | None = None
        try:
            response = await self._client.chat.completions.create(**kwargs)
            try:
                async for chunk in response:
                    if chunk.choices:
                        text = chunk.choices[0].delta.content
                        if text:
                            yield StreamDelta(text=text)
                    if getattr(chunk, "usage", None):
                        usage = TokenUsage(
                            input_tokens=chunk.usage.prompt_tokens,
                            output_tokens=chunk.usage.completion_tokens,
                        )
            finally:
                await response.close()
        except openai.APIError as exc:
            raise map_sdk_error(exc, self.get_provider_name(), LLMError, self._provider_label) from exc

        logger.info(
            "openai_stream_complete",
            model=model_name,
            provider=self._provider_label,
            tokens=usage.total_tokens if usage else None,
        )
        if usage is not None:
            yield StreamDelta(usage=usage)

    def supports_chat(self) -> bool:
        return True

    def supports_streaming(self) -> bool:
        return True

    def get_default_model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        """Return ``True`` if an API key is configured (doesn't verify it works)."""
        return bool(self._api_key)

    async def validate_credentials(self) -> bool:
        """Try listing models to verify the API key works.

        This is a lightweight API call that confirms the key is accepted
        without incurring inference costs.
        """
        if not self.is_available():
            return False
        try:
            await self._client.models.list()
            return True
        except openai.APIError:
            return False

    def get_provider_name(self) -> str:
        """Return 'openai' or 'openai-compatible' depending on configuration."""
        return self._provider_label

    @staticmethod
    def _messages(system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
