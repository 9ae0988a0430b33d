"""Abstract base class for text-embedding service providers.

Defines the contract for generating embedding vectors from text.
Implementations may wrap OpenAI ``text-embedding-3-small``, Nomic
``nomic-embed-text`` (local via Ollama) or any other backend.  Batching,
pacing and retries live in the embedding router, so a provider only has to
embed one request's worth of texts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, ConfigDict, Field


class EmbeddingBatch(BaseModel):
    """Vectors for one provider call, positionally aligned with the input."""

    model_config = ConfigDict(frozen=True)

    vectors: list[list[float]]
    token_count: int = Field(default=0, ge=0)
    model: str


# Concrete implementations:
#   OpenAIEmbeddingProvider  -- text-embedding-3-small (requires API key)
#   NomicEmbeddingProvider   -- nomic-embed-text via Ollama (local)
# Located in: src/providers/embedding/
class IEmbeddingProvider(ABC):
    """Contract for text-embedding services used by the embedding router."""

    @abstractmethod
    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingBatch:
        """Generate embedding vectors for a batch of texts.

        Parameters
        ----------
        texts:
            Texts to embed; the router never sends more than its batch size.
        model:
            Override the provider's default model.

        Returns
        -------
        EmbeddingBatch
            ``vectors[i]`` embeds ``texts[i]``.  ``token_count`` is reported
            by the provider or estimated.

        Raises
        ------
        src.utils.errors.EmbeddingError
            If the call fails; ``transient`` marks failures worth retrying.
        """

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the dimensionality of the embedding vectors.

        Example values: ``1536`` (OpenAI ``text-embedding-3-small``),
        ``768`` (Nomic ``nomic-embed-text``).
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier, e.g. ``"openai"`` or ``"nomic"``."""

    @abstractmethod
    def get_default_model(self) -> str:
        """Return the model used when a call passes ``model=None``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider is configured."""
