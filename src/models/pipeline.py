"""Request lifecycle models for the RAG orchestrator.

A chat request moves through a small state machine::

    VALIDATING -> RETRIEVING -> GENERATING -> POST_PROCESSING -> DONE
         \\____________\\______________\\_______________\\-> FAILED

The orchestrator (src/pipeline/orchestrator.py) records the stage it
reached and the wall-clock time of each stage on the returned
:class:`RAGResult`.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.models.agent_config import AgentRAGConfig
from src.models.query import CitedSource
from src.models.usage import TokenUsage


class RAGStage(str, Enum):  # noqa: UP042
    """Stages of one request/response lifecycle."""

    VALIDATING = "VALIDATING"
    RETRIEVING = "RETRIEVING"
    GENERATING = "GENERATING"
    POST_PROCESSING = "POST_PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


class StageError(BaseModel):
    """Structured error for telemetry, attached to a failed or degraded result.

    ``recoverable`` errors (degraded retrieval, cache outage) did not stop
    the request; unrecoverable ones moved it to ``FAILED``.
    """

    model_config = ConfigDict(frozen=True)

    stage: RAGStage
    error_type: str
    message: str
    provider: str | None = None
    recoverable: bool = True
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc)  # noqa: UP017
    )


class PerformanceMetrics(BaseModel):
    """Per-stage wall-clock timings in milliseconds."""

    model_config = ConfigDict(frozen=True)

    total_ms: float = 0.0
    validation_ms: float = 0.0
    retrieval_ms: float = 0.0
    generation_ms: float = 0.0
    post_processing_ms: float = 0.0


class RAGRequest(BaseModel):
    """What a chat surface hands to the orchestrator.

    Emptiness of ``query``/``agent_id`` is checked by the orchestrator's
    VALIDATING stage rather than here, so the rejection is reported as a
    domain ValidationError with every problem listed.
    """

    model_config = ConfigDict(frozen=True)

    query: str = ""
    agent_id: str = ""
    conversation_id: str | None = None
    config: AgentRAGConfig | None = None
    stream: bool = False
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RAGResult(BaseModel):
    """Aggregate answer returned to the chat surface."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    answer: str
    sources: list[CitedSource] = Field(default_factory=list)
    cache_hit: bool = False
    stage: RAGStage = RAGStage.DONE
    errors: list[StageError] = Field(default_factory=list)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    provider: str | None = None
    model: str | None = None
    context_chunks: int = 0
    relevance_score: float = 0.0

    @property
    def failed(self) -> bool:
        return self.stage == RAGStage.FAILED
