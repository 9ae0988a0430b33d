"""OpenAI-compatible embedding provider adapter.

Wraps the ``openai`` async client to implement :class:`IEmbeddingProvider`.
Supports both real OpenAI and OpenAI-compatible providers (TogetherAI,
Anyscale, Fireworks) via custom ``base_url`` and model name settings.
"""

from __future__ import annotations

import openai
import structlog

from src.config.settings import Settings
from src.interfaces.embedding_provider import EmbeddingBatch, IEmbeddingProvider
from src.providers.error_mapping import map_sdk_error
from src.utils.errors import EmbeddingError
from src.utils.text_normalizer import estimate_tokens, truncate_to_tokens

logger = structlog.get_logger(logger_name=__name__)

# Known embedding model dimensions.
_MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "BAAI/bge-base-en-v1.5": 768,
    "BAAI/bge-large-en-v1.5": 1024,
}

# Input token limits; longer texts are truncated (estimated tokens).
_MODEL_MAX_TOKENS: dict[str, int] = {
    "text-embedding-3-small": 8191,
    "text-embedding-3-large": 8191,
    "text-embedding-ada-002": 8191,
    "BAAI/bge-base-en-v1.5": 512,
    "BAAI/bge-large-en-v1.5": 512,
}


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """Embedding provider backed by an OpenAI-compatible embeddings API.

    Uses ``text-embedding-3-small`` (1536 dims) by default.  When
    ``openai_base_url`` is configured the client points at that URL and
    uses ``openai_embedding_model``.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._api_key = settings.openai_api_key

        client_kwargs: dict = {"api_key": self._api_key}
        if settings.openai_base_url:
            client_kwargs["base_url"] = settings.openai_base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._model = settings.openai_embedding_model or "text-embedding-3-small"
        self._provider_label = "openai-compatible" if settings.openai_base_url else "openai"

    # ------------------------------------------------------------------
    # IEmbeddingProvider implementation
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingBatch:
        """Embed *texts* in one API call, truncating over-long inputs."""
        model_name = model or self._model
        if not texts:
            return EmbeddingBatch(vectors=[], token_count=0, model=model_name)

        max_tokens = _MODEL_MAX_TOKENS.get(model_name, 0)
        if max_tokens:
            texts = [truncate_to_tokens(t, max_tokens) for t in texts]

        try:
            response = await self._client.embeddings.create(input=texts, model=model_name)
        except openai.APIError as exc:
            raise map_sdk_error(
                exc, self.get_provider_name(), EmbeddingError, self._provider_label
            ) from exc

        vectors = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
        if len(vectors) != len(texts):
            raise EmbeddingError(
                message=f"expected {len(texts)} vectors, got {len(vectors)}",
                provider_name=self.get_provider_name(),
            )
        tokens = (
            response.usage.total_tokens
            if response.usage
            else sum(estimate_tokens(t) for t in texts)
        )
        logger.info(
            "openai_embedding_batch",
            model=model_name,
            provider=self._provider_label,
            batch_size=len(texts),
            tokens=tokens,
        )
        return EmbeddingBatch(vectors=vectors, token_count=tokens, model=model_name)

    def get_dimension(self) -> int:
        return _MODEL_DIMENSIONS.get(self._model, 768)

    def get_provider_name(self) -> str:
        return self._provider_label

    def get_default_model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        """Return ``True`` if an API key is configured."""
        return bool(self._api_key)
