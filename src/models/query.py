"""Query-time models: processed queries, search filters and context bundles."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from src.models.agent_config import SearchWeights
from src.models.rag import RetrievedChunk
from src.models.source import SourceType


class QueryIntent(str, Enum):  # noqa: UP042
    QUESTION = "question"
    COMMAND = "command"
    SEARCH = "search"
    CONVERSATION = "conversation"


class ProcessedQuery(BaseModel):
    """A user query after normalization, intent detection and keyword extraction."""

    model_config = ConfigDict(frozen=True)

    original: str
    normalized: str
    intent: QueryIntent = QueryIntent.SEARCH
    keywords: list[str] = Field(default_factory=list)
    variations: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class SearchFilters(BaseModel):
    """Constraints passed to the knowledge store's similarity search."""

    model_config = ConfigDict(frozen=True)

    source_types: list[SourceType] | None = None
    min_similarity: float = Field(default=0.3, ge=0.0, le=1.0)
    max_results: int = Field(default=5, ge=1, le=100)


DEFAULT_SOURCE_TYPE_WEIGHTS: dict[str, float] = {
    SourceType.QA.value: 1.2,
    SourceType.TEXT.value: 1.0,
    SourceType.FILE.value: 0.9,
    SourceType.WEBSITE.value: 0.8,
}


class RankingOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_chunks: int = Field(default=10, ge=1)
    max_tokens: int = Field(default=4000, ge=1)
    weights: SearchWeights = Field(default_factory=SearchWeights)
    source_type_weights: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SOURCE_TYPE_WEIGHTS)
    )


class RankedChunk(BaseModel):
    """A retrieved chunk with its blended ranking score."""

    model_config = ConfigDict(frozen=True)

    retrieved: RetrievedChunk
    score: float = 0.0
    factors: dict[str, float] = Field(
        default_factory=dict,
        description="Per-signal contributions: semantic, keyword, recency, diversity.",
    )

    @property
    def token_count(self) -> int:
        return self.retrieved.chunk.token_count

    @property
    def source_id(self) -> str:
        return self.retrieved.chunk.source_id


class SourceAttribution(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_id: str
    source_name: str
    source_type: SourceType
    chunk_count: int = Field(default=0, ge=0)


class ContextBundle(BaseModel):
    """The token-bounded context handed to the LLM router."""

    model_config = ConfigDict(frozen=True)

    chunks: list[RankedChunk] = Field(default_factory=list)
    total_tokens: int = Field(default=0, ge=0)
    relevance_score: float = Field(default=0.0, ge=0.0)
    diversity_score: float = Field(default=0.0, ge=0.0, le=1.0)
    sources: list[SourceAttribution] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.chunks

    def texts(self) -> list[str]:
        return [ranked.retrieved.chunk.content for ranked in self.chunks]


class CitedSource(BaseModel):
    """A source cited in an answer (also the shape stored in cache entries)."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    relevance: float = 0.0
    source_type: SourceType = SourceType.TEXT
