"""RAG data models for the agent knowledge base.

Defines Pydantic v2 models for chunks, embeddings, retrieval results and
ingestion summaries.  All models are frozen.

Ingestion overview:

    1. EXTRACTION: markup is reduced to clean text (content_extractor.py).
    2. COMPRESSION: the raw document is archived with the best available
       compression strategy (compression.py).
    3. CHUNKING: cleaned text is split into token-bounded chunks
       (chunker.py).
    4. DEDUPLICATION: each chunk is fingerprinted; repeats are kept but
       flagged with a pointer to the canonical chunk (deduplication.py).
    5. EMBEDDING: non-duplicate chunks get one vector per model
       (embedding_router.py).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.models.source import SourceType


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


class ContentStructure(str, Enum):  # noqa: UP042
    """Dominant structure detected in a piece of text."""

    CODE = "code"
    LIST = "list"
    TABLE = "table"
    HEADING = "heading"
    PARAGRAPH = "paragraph"


class Complexity(str, Enum):  # noqa: UP042
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class ChunkMetadata(BaseModel):
    """Structural metadata attached to every chunk by the semantic chunker."""

    model_config = ConfigDict(frozen=True)

    content_type: ContentStructure = ContentStructure.PARAGRAPH
    complexity: Complexity = Complexity.MEDIUM
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    keywords: list[str] = Field(default_factory=list)
    heading: str | None = None


# ---------------------------------------------------------------------------
# Chunk -- the fundamental unit of the knowledge base.
# ---------------------------------------------------------------------------
class Chunk(BaseModel):
    """An ordered, token-bounded slice of a source's cleaned content.

    Within a source, ``chunk_index`` values are unique and contiguous
    (0..N-1).  A chunk with ``is_duplicate=True`` points at the canonical
    chunk through ``duplicate_of`` and never gets an embedding.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    source_id: str
    agent_id: str
    chunk_index: int = Field(ge=0)
    content: str
    token_count: int = Field(default=0, ge=0, description="Estimated, not exact (4 chars/token).")
    content_hash: str = ""
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    is_duplicate: bool = False
    duplicate_of: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class Embedding(BaseModel):
    """A vector tied to one non-duplicate chunk, tagged with its model."""

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    agent_id: str
    source_id: str
    model: str
    vector: list[float]

    @property
    def dimension(self) -> int:
        return len(self.vector)


# ---------------------------------------------------------------------------
# RetrievedChunk -- a similarity-search hit with its source attribution.
# ---------------------------------------------------------------------------
class RetrievedChunk(BaseModel):
    """A chunk returned by the knowledge store's similarity search."""

    model_config = ConfigDict(frozen=True)

    chunk: Chunk
    similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    keyword_score: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Share of query keywords matched as whole words."
    )
    source_name: str = ""
    source_type: SourceType = SourceType.TEXT
    source_updated_at: datetime | None = None
    matched_by: str = Field(default="semantic", description='"semantic" or "keyword".')


class IngestionResult(BaseModel):
    """Summary of a single source ingestion run."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    agent_id: str
    job_id: str | None = None
    processing_mode: str = "chunking"
    chunks_created: int = Field(default=0, ge=0)
    unique_chunks: int = Field(default=0, ge=0)
    duplicate_chunks: int = Field(default=0, ge=0)
    embeddings_created: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    compression_method: str = "none"
    compression_ratio: float = 1.0
    ingestion_time: float = Field(default=0.0, ge=0.0, description="Wall-clock seconds.")


class CorpusStats(BaseModel):
    """Aggregate statistics for one agent's knowledge base."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    total_sources: int = Field(default=0, ge=0)
    active_sources: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=0, ge=0)
    duplicate_chunks: int = Field(default=0, ge=0)
    total_embeddings: int = Field(default=0, ge=0)
    sources_by_type: dict[str, int] = Field(default_factory=dict)
