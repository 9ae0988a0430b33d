"""Pydantic request/response schemas for the agent-rag HTTP API.

Defines the public contract for the chat, ingestion, cache, configuration
and health endpoints.  Request schemas end with ``Request``; response
schemas end with ``Response``.  ``Field(...)`` constraints are enforced by
FastAPI before a handler runs, so malformed bodies get a 422 without
reaching the services.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.models.pipeline import PerformanceMetrics, RAGResult, StageError
from src.models.query import CitedSource
from src.models.rag import IngestionResult
from src.models.source import SourceType
from src.models.usage import TokenUsage, UsageMetrics

# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatRequest(BaseModel):
    """A user message addressed to one agent."""

    query: str = Field(..., min_length=1, max_length=4000)
    agent_id: str = Field(..., min_length=1)
    conversation_id: str | None = None
    config: dict[str, Any] | None = Field(
        default=None,
        description="Per-request overrides merged over the agent's configured options.",
    )


class ChatResponse(BaseModel):
    """Answer to a :class:`ChatRequest`."""

    request_id: str
    answer: str
    sources: list[CitedSource] = Field(default_factory=list)
    cache_hit: bool = False
    stage: str
    errors: list[StageError] = Field(default_factory=list)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    provider: str | None = None
    model: str | None = None
    context_chunks: int = 0
    relevance_score: float = 0.0

    @classmethod
    def from_result(cls, result: RAGResult) -> ChatResponse:
        data = result.model_dump()
        data["stage"] = result.stage.value
        return cls(**data)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class IngestSourceRequest(BaseModel):
    """One source handed over by the crawler or uploader."""

    content: str = Field(..., min_length=1)
    source_type: SourceType = SourceType.TEXT
    source_id: str | None = None
    url: str | None = None
    title: str | None = None
    parent_id: str | None = None
    is_markup: bool | None = None


class BatchIngestRequest(BaseModel):
    """Several sources ingested under a single training job."""

    sources: list[IngestSourceRequest] = Field(..., min_length=1, max_length=100)


class IngestResponse(BaseModel):
    """Outcome of ingesting one source."""

    source_id: str
    agent_id: str
    job_id: str | None = None
    processing_mode: str
    chunks_created: int
    unique_chunks: int
    duplicate_chunks: int
    embeddings_created: int
    total_tokens: int
    compression_method: str
    compression_ratio: float
    ingestion_time: float

    @classmethod
    def from_result(cls, result: IngestionResult) -> IngestResponse:
        return cls(**result.model_dump())


class IngestFailure(BaseModel):
    """A source that failed inside a batch."""

    phase: str
    message: str


class BatchIngestResponse(BaseModel):
    job_id: str | None = None
    results: list[IngestResponse] = Field(default_factory=list)
    failures: list[IngestFailure] = Field(default_factory=list)


class JobStatusResponse(BaseModel):
    """Progress of a training job."""

    job_id: str
    agent_id: str
    status: str
    progress: float = Field(ge=0.0, le=100.0, description="Percent of sources processed.")
    total_sources: int = 0
    processed_sources: int = 0
    total_chunks: int = 0
    processed_chunks: int = 0
    failed_chunks: int = 0
    failed_phase: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RemoveSourceResponse(BaseModel):
    source_id: str
    removed: int
    purged: bool


class CorpusStatsResponse(BaseModel):
    """Aggregate statistics for one agent's knowledge base."""

    agent_id: str
    total_sources: int = 0
    active_sources: int = 0
    total_chunks: int = 0
    duplicate_chunks: int = 0
    total_embeddings: int = 0
    sources_by_type: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class CacheInvalidateResponse(BaseModel):
    agent_id: str
    invalidated: int


class CacheStatsResponse(BaseModel):
    size: int
    hits: int
    misses: int
    hit_rate: float
    top_queries: list[dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Configuration, usage and health
# ---------------------------------------------------------------------------


class ConfigValidateRequest(BaseModel):
    """Agent options to check without saving them."""

    config: dict[str, Any] = Field(default_factory=dict)
    template: str | None = None


class ConfigValidateResponse(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    config: dict[str, Any] | None = Field(
        default=None, description="The fully merged config when valid."
    )


class UsageResponse(BaseModel):
    """Token and cost totals, overall and grouped by provider, agent and operation."""

    agent_id: str | None = None
    metrics: UsageMetrics


class HealthResponse(BaseModel):
    """Application health check response."""

    status: str
    version: str
    providers: dict[str, Any]


class ErrorResponse(BaseModel):
    """Standard error response body."""

    error: str
    detail: str | None = None
    errors: list[str] = Field(default_factory=list)
