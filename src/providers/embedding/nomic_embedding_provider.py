"""Nomic embedding provider adapter (local/free via Ollama).

Wraps the Ollama OpenAI-compatible endpoint to implement
:class:`IEmbeddingProvider` using ``nomic-embed-text`` (768 dimensions).
Runs locally with no API key.  Its 8k-token context makes it the usual
choice for the long-text route of the embedding router.
"""

from __future__ import annotations

import httpx
import openai
import structlog

from src.config.settings import Settings
from src.interfaces.embedding_provider import EmbeddingBatch, IEmbeddingProvider
from src.providers.error_mapping import map_sdk_error
from src.utils.errors import EmbeddingError
from src.utils.text_normalizer import estimate_tokens

logger = structlog.get_logger(logger_name=__name__)


class NomicEmbeddingProvider(IEmbeddingProvider):
    """Embedding provider backed by ``nomic-embed-text`` served via Ollama."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._base_url = settings.ollama_base_url
        self._client = openai.AsyncOpenAI(
            base_url=f"{self._base_url.rstrip('/')}/v1",
            api_key="ollama",  # Ollama doesn't require a real key
        )
        self._model = settings.nomic_embedding_model or "nomic-embed-text"
        self._dimension = 768

    # ------------------------------------------------------------------
    # IEmbeddingProvider implementation
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingBatch:
        """Embed *texts* in one call to the Ollama server."""
        model_name = model or self._model
        if not texts:
            return EmbeddingBatch(vectors=[], token_count=0, model=model_name)

        try:
            response = await self._client.embeddings.create(input=texts, model=model_name)
        except openai.APIError as exc:
            raise map_sdk_error(exc, self.get_provider_name(), EmbeddingError, "Nomic/Ollama") from exc

        vectors = [item.embedding for item in response.data]
        # Ollama does not always report usage.
        tokens = (
            response.usage.total_tokens
            if getattr(response, "usage", None)
            else sum(estimate_tokens(t) for t in texts)
        )
        logger.info("nomic_embedding_batch", model=model_name, batch_size=len(texts))
        return EmbeddingBatch(vectors=vectors, token_count=tokens, model=model_name)

    def get_dimension(self) -> int:
        """Return 768 (nomic-embed-text dimension)."""
        return self._dimension

    def get_provider_name(self) -> str:
        return "nomic"

    def get_default_model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        """Return ``True`` if the Ollama server is reachable."""
        if not self._base_url:
            return False
        try:
            response = httpx.get(f"{self._base_url.rstrip('/')}/api/tags", timeout=3.0)
            return response.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False
