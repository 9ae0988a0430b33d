"""Source document models.

A :class:`Source` is one document owned by one agent: a crawled web page,
an uploaded file, manually entered text or a Q&A pair.  It moves through
extraction -> cleaning -> chunking during ingestion and is soft-deleted
(``is_active=False``) rather than removed, unless explicitly purged.

All models are frozen; state changes produce copies via
``model_copy(update={...})``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


class SourceType(str, Enum):  # noqa: UP042
    """Kind of document a source was created from."""

    TEXT = "text"
    FILE = "file"
    WEBSITE = "website"
    QA = "qa"


class SourceStatus(str, Enum):  # noqa: UP042
    """Crawl/training status of a source."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CompressionMetadata(BaseModel):
    """How the archived raw content of a source was compressed."""

    model_config = ConfigDict(frozen=True)

    original_size: int = Field(ge=0, description="Size of the uncompressed UTF-8 bytes.")
    compressed_size: int = Field(ge=0, description="Size after compression.")
    ratio: float = Field(
        ge=0.0,
        description="compressed_size / original_size; 1.0 means stored uncompressed.",
    )
    method: str = Field(description='Winning strategy: "deflate-dict", "rle" or "none".')


class Source(BaseModel):
    """A document owned by one agent."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    agent_id: str
    source_type: SourceType = SourceType.TEXT
    url: str | None = None
    title: str = ""
    raw_content: str = ""
    cleaned_content: str = ""
    compressed_content: bytes | None = Field(
        default=None,
        description="Archived raw content in the format named by compression.method.",
    )
    compression: CompressionMetadata | None = None
    extraction_method: str | None = None
    processing_mode: str | None = None
    summary: str = ""
    keywords: list[str] = Field(default_factory=list)
    status: SourceStatus = SourceStatus.PENDING
    error: str | None = None
    parent_id: str | None = Field(
        default=None,
        description="Parent source for pages discovered by a multi-page crawl.",
    )
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def display_name(self) -> str:
        return self.title or self.url or self.id


class IngestRequest(BaseModel):
    """What the upstream crawler/uploader hands to the ingestion service."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    content: str
    source_type: SourceType = SourceType.TEXT
    source_id: str | None = None
    url: str | None = None
    title: str | None = None
    parent_id: str | None = None
    is_markup: bool | None = Field(
        default=None,
        description="Force markup extraction on/off; None sniffs the content.",
    )
