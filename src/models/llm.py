"""LLM call results and streaming event models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from src.models.pipeline import PerformanceMetrics
from src.models.query import CitedSource
from src.models.usage import TokenUsage


class LLMCompletion(BaseModel):
    """Result of a non-streaming completion."""

    model_config = ConfigDict(frozen=True)

    content: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    provider: str = ""
    model: str = ""
    finish_reason: str | None = None


class StreamDelta(BaseModel):
    """One item produced by a provider's streaming iterator.

    Text deltas carry ``text``; the provider's final item carries ``usage``
    (when the provider reports it) and an empty ``text``.
    """

    model_config = ConfigDict(frozen=True)

    text: str = ""
    usage: TokenUsage | None = None


class StreamEventType(str, Enum):  # noqa: UP042
    DELTA = "delta"
    COMPLETE = "complete"
    ERROR = "error"


class StreamEvent(BaseModel):
    """An event delivered to a streaming caller.

    Callers receive ordered ``delta`` events, at most one ``error`` event,
    and exactly one final ``complete`` event carrying aggregate usage, even
    when the stream was cancelled.  The orchestrator also attaches
    per-stage timings to ``complete``.
    """

    model_config = ConfigDict(frozen=True)

    type: StreamEventType
    index: int = Field(default=0, ge=0)
    text: str = ""
    usage: TokenUsage | None = None
    cancelled: bool = False
    provider: str = ""
    model: str = ""
    error: str | None = None
    sources: list[CitedSource] = Field(default_factory=list)
    performance: PerformanceMetrics | None = None


class GenerationOptions(BaseModel):
    """Per-call generation knobs passed to the LLM router."""

    model_config = ConfigDict(frozen=True)

    system_prompt: str | None = None
    model: str | None = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    agent_id: str | None = None
