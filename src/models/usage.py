"""Token usage and billing records.

A :class:`UsageRecord` is written for every LLM or embedding call that
reported (or could estimate) token usage.  Records are append-only and are
not removed when the source or agent they reference is deleted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class TokenUsage(BaseModel):
    """Input/output token counts for one or more provider calls."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    estimated: bool = Field(
        default=False,
        description="True when counts were estimated locally rather than reported.",
    )

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def plus(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            estimated=self.estimated or other.estimated,
        )


class UsageOperation(str, Enum):  # noqa: UP042
    CHAT = "chat"
    EMBEDDING = "embedding"


class UsageRecord(BaseModel):
    """One row per LLM/embedding call."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    agent_id: str | None = None
    source_id: str | None = None
    provider: str
    model: str
    operation: UsageOperation
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0.0, description="Derived cost in USD.")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc)  # noqa: UP017
    )


class UsageTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    tokens: int = 0
    cost: float = 0.0


class UsageMetrics(BaseModel):
    """Aggregate of usage records, overall and per provider/agent/operation."""

    model_config = ConfigDict(frozen=True)

    total_tokens: int = 0
    total_cost: float = 0.0
    record_count: int = 0
    by_provider: dict[str, UsageTotals] = Field(default_factory=dict)
    by_agent: dict[str, UsageTotals] = Field(default_factory=dict)
    by_operation: dict[str, UsageTotals] = Field(default_factory=dict)
