"""Ollama LLM provider adapter.

Wraps a local Ollama server via its OpenAI-compatible API endpoint.
Ollama is a free, open-source tool for running LLMs locally, so answers
can be generated offline with no API cost.

Setup: install Ollama (https://ollama.ai), then ``ollama pull llama3.1``
and set ``OLLAMA_BASE_URL=http://localhost:11434``.
"""

from __future__ import annotations

import httpx
import openai
import structlog

from src.config.settings import Settings
from src.providers.llm.openai_provider import OpenAILLMProvider

logger = structlog.get_logger(logger_name=__name__)


class OllamaLLMProvider(OpenAILLMProvider):
    """LLM provider backed by a local Ollama server.

    Ollama exposes an OpenAI-compatible ``/v1`` API, so this adapter reuses
    the OpenAI provider with the client pointed at the local URL.  Ollama
    does not report usage on streams; the streaming handler estimates it.
    """

    _stream_reports_usage = False

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._api_key = ""
        self._base_url = settings.ollama_base_url
        self._client = openai.AsyncOpenAI(
            base_url=f"{self._base_url.rstrip('/')}/v1",
            # The openai SDK requires a non-empty key; Ollama ignores it.
            api_key="ollama",
            timeout=openai.Timeout(settings.llm_timeout_seconds, connect=5.0),
        )
        self._model = settings.ollama_chat_model or "llama3.1"
        self._provider_label = "ollama"

    def is_available(self) -> bool:
        """Return ``True`` if the Ollama base URL is configured."""
        return bool(self._base_url)

    async def validate_credentials(self) -> bool:
        """Check that the Ollama server is running.

        The native ``/api/tags`` endpoint lists installed models without
        running inference.
        """
        if not self.is_available():
            return False
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self._base_url.rstrip('/')}/api/tags")
                return response.status_code == 200
        except httpx.HTTPError as exc:
            logger.debug("ollama_unreachable", url=self._base_url, error=str(exc))
            return False

    def get_provider_name(self) -> str:
        return "ollama"
