"""Response-cache entry and statistics models."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from src.models.query import CitedSource


class CacheMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_id: str
    query_hash: str
    processing_time_ms: float = 0.0
    hit_count: int = Field(default=0, ge=0)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc)  # noqa: UP017
    )


class CacheEntry(BaseModel):
    """A cached answer keyed by the query fingerprint."""

    model_config = ConfigDict(frozen=True)

    response: str
    sources: list[CitedSource] = Field(default_factory=list)
    metadata: CacheMetadata


class CacheStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    size: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0


class TopQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    query_hash: str
    agent_id: str
    hit_count: int
    last_access: datetime
