"""Abstract base class for the knowledge store.

The knowledge store is the persistence boundary of the pipeline: sources,
chunks, embeddings, usage records and training jobs, plus a similarity
search over embeddings scoped by agent.  Implementations may wrap an
in-process structure, SQLite, Postgres with pgvector, or any other engine
that can honour the invariants below.

Invariants every implementation must keep:

* ``get_chunks`` returns a source's chunks ordered by ``chunk_index``.
* ``upsert_embeddings`` replaces any existing vector for the same
  ``(chunk_id, model)`` pair, so retried embedding writes are idempotent.
* Duplicate chunks (``is_duplicate=True``) are never returned by
  :meth:`similarity_search` or :meth:`keyword_search`, and neither are
  chunks of inactive or failed sources.
* ``delete_source`` cascades to child sources, their chunks and
  embeddings.  Usage records are never deleted.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.models.query import SearchFilters
from src.models.rag import Chunk, CorpusStats, Embedding, RetrievedChunk
from src.models.source import Source
from src.models.training import TrainingJob
from src.models.usage import UsageRecord


# Concrete implementations: MemoryKnowledgeStore and SQLiteKnowledgeStore
# (src/providers/store/).
class IKnowledgeStore(ABC):
    """Contract for knowledge-store backends used by ingestion and retrieval.

    All methods are async so network-backed stores do not block the event
    loop.
    """

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:  # noqa: B027
        """Create tables/indices.  Optional; the default does nothing."""

    async def close(self) -> None:  # noqa: B027
        """Release connections.  Optional; the default does nothing."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier, e.g. ``"memory"`` or ``"sqlite"``."""

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_source(self, source: Source) -> Source:
        """Insert or replace *source* (keyed by ``source.id``)."""

    @abstractmethod
    async def get_source(self, source_id: str) -> Source | None:
        """Return the source with *source_id*, or ``None``."""

    @abstractmethod
    async def list_sources(self, agent_id: str, include_inactive: bool = False) -> list[Source]:
        """Return the agent's sources, oldest first."""

    @abstractmethod
    async def deactivate_source(self, source_id: str) -> int:
        """Soft-delete a source and its child sources.

        Returns
        -------
        int
            Number of sources deactivated.
        """

    @abstractmethod
    async def delete_source(self, source_id: str) -> int:
        """Hard-delete a source, its child sources, their chunks and embeddings.

        Returns
        -------
        int
            Number of sources removed.
        """

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_chunks(self, chunks: list[Chunk]) -> int:
        """Insert or replace *chunks* (keyed by ``chunk.id``); return the count."""

    @abstractmethod
    async def get_chunks(self, source_id: str) -> list[Chunk]:
        """Return a source's chunks ordered by ``chunk_index``."""

    @abstractmethod
    async def delete_chunks(self, source_id: str) -> int:
        """Delete a source's chunks and their embeddings; return the count."""

    @abstractmethod
    async def find_chunk_by_hash(self, agent_id: str, content_hash: str) -> Chunk | None:
        """Return the canonical (non-duplicate) chunk with *content_hash*.

        Only chunks belonging to active, non-failed sources of *agent_id*
        qualify.
        """

    @abstractmethod
    async def find_orphaned_duplicates(self, agent_id: str) -> list[Chunk]:
        """Return duplicates whose canonical chunk no longer counts.

        A canonical stops counting once it is deleted or its source is
        inactive or failed.  Only duplicates in active, non-failed sources
        are returned, oldest first.
        """

    @abstractmethod
    async def find_unembedded_chunks(self, agent_id: str) -> list[Chunk]:
        """Return canonical chunks of active sources without a vector under any model.

        Failed sources are included so their chunks can be embedded on a
        later attempt.  Oldest first.
        """

    # ------------------------------------------------------------------
    # Embeddings and search
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_embeddings(self, embeddings: list[Embedding]) -> int:
        """Store vectors, replacing existing ones for the same (chunk, model)."""

    @abstractmethod
    async def get_embedding(self, chunk_id: str, model: str) -> Embedding | None:
        """Return the current vector for *chunk_id* under *model*."""

    @abstractmethod
    async def similarity_search(
        self,
        agent_id: str,
        vector: list[float],
        filters: SearchFilters,
        model: str | None = None,
    ) -> list[RetrievedChunk]:
        """Return the agent's chunks most similar to *vector*.

        Parameters
        ----------
        agent_id:
            Only this agent's active, non-duplicate chunks are searched.
        vector:
            Query embedding.
        filters:
            ``min_similarity`` floor, ``max_results`` cap and optional
            ``source_types`` restriction.
        model:
            Restrict to embeddings produced by this model (vectors from
            different models are not comparable).

        Returns
        -------
        list[RetrievedChunk]
            Best match first, cosine similarity clamped to 0.0-1.0.
        """

    @abstractmethod
    async def keyword_search(
        self,
        agent_id: str,
        keywords: list[str],
        filters: SearchFilters,
    ) -> list[RetrievedChunk]:
        """Return chunks containing *keywords* as whole words, most matches first.

        ``keyword_score`` on the results is the fraction of keywords
        matched and must reach ``filters.min_similarity``; ``similarity``
        stays 0.0 because no vector comparison was made.
        """

    # ------------------------------------------------------------------
    # Usage records and jobs
    # ------------------------------------------------------------------

    @abstractmethod
    async def record_usage(self, record: UsageRecord) -> None:
        """Append a usage record."""

    @abstractmethod
    async def list_usage(self, agent_id: str | None = None) -> list[UsageRecord]:
        """Return usage records, oldest first, optionally for one agent."""

    @abstractmethod
    async def save_job(self, job: TrainingJob) -> TrainingJob:
        """Insert or replace a training job."""

    @abstractmethod
    async def get_job(self, job_id: str) -> TrainingJob | None:
        """Return the job with *job_id*, or ``None``."""

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_stats(self, agent_id: str) -> CorpusStats:
        """Return aggregate counts for one agent's knowledge base."""
