"""Per-agent RAG configuration.

:class:`AgentRAGConfig` is the validated record behind an agent's settings
form.  Field constraints are declared with ``Field(ge=..., le=...)`` so that
pydantic reports every violated constraint in one pass; :meth:`from_dict`
converts those into a single :class:`~src.utils.errors.ValidationError`
whose ``errors`` list names all of them.

Search weights must sum to 1.0 within a tolerance of 0.1.  Configurations
outside that band are rejected, never silently renormalized.
"""

from __future__ import annotations

from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.models.source import SourceType
from src.utils.errors import ValidationError

WEIGHT_SUM_TOLERANCE = 0.1


class SearchWeights(BaseModel):
    """Blend of ranking signals used by the context ranker."""

    model_config = ConfigDict(frozen=True)

    semantic: float = Field(default=0.7, ge=0.0, le=1.0)
    keyword: float = Field(default=0.2, ge=0.0, le=1.0)
    recency: float = Field(default=0.05, ge=0.0, le=1.0)
    diversity: float = Field(default=0.05, ge=0.0, le=1.0)

    @property
    def total(self) -> float:
        return self.semantic + self.keyword + self.recency + self.diversity

    @model_validator(mode="after")
    def _check_sum(self) -> SearchWeights:
        if abs(self.total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(
                f"weights must sum to 1.0 (+/-{WEIGHT_SUM_TOLERANCE}), got {self.total:.2f}"
            )
        return self


class ResponseSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    include_sources: bool = True
    format_markdown: bool = True
    safety_filter: bool = False
    add_timestamp: bool = False


class PerformanceSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(default=30.0, gt=0.0, le=300.0)
    max_concurrent_requests: int = Field(default=10, ge=1, le=100)
    context_max_tokens: int = Field(
        default=2000,
        ge=100,
        le=32000,
        description="Token budget for the retrieved context bundle.",
    )


class AgentRAGConfig(BaseModel):
    """Validated RAG options for one agent."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rag_enabled: bool = True
    max_sources: int = Field(default=5, ge=1, le=20)
    min_relevance_score: float = Field(default=0.3, ge=0.0, le=1.0)
    context_window: int = Field(default=3, ge=1, le=50, description="Chunks kept in context.")
    caching_enabled: bool = True
    streaming_enabled: bool = True
    preferred_provider: str | None = None
    model: str | None = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1, le=4000)
    system_prompt: str | None = None
    source_types: list[SourceType] | None = None
    search_weights: SearchWeights = Field(default_factory=SearchWeights)
    response: ResponseSettings = Field(default_factory=ResponseSettings)
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @classmethod
    def validate_values(cls, data: dict[str, Any]) -> list[str]:
        """Return every constraint *data* violates; empty when valid."""
        try:
            cls.model_validate(data)
        except pydantic.ValidationError as exc:
            return [_format_error(err) for err in exc.errors()]
        return []

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentRAGConfig:
        """Build a config or raise :class:`ValidationError` listing all problems."""
        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as exc:
            errors = [_format_error(err) for err in exc.errors()]
            raise ValidationError(errors=errors) from exc

    @classmethod
    def from_template(cls, name: str, **overrides: Any) -> AgentRAGConfig:
        """Build a config from one of the named templates plus overrides."""
        if name not in TEMPLATES:
            raise ValidationError(
                errors=[f"template: unknown template '{name}' (choose from {sorted(TEMPLATES)})"]
            )
        data = merge_options(dict(TEMPLATES[name]), overrides)
        return cls.from_dict(data)

    def cache_options(self) -> dict[str, Any]:
        """The option subset that changes an answer, used in cache fingerprints."""
        return {
            "max_sources": self.max_sources,
            "min_relevance_score": self.min_relevance_score,
            "context_window": self.context_window,
            "provider": self.preferred_provider,
            "model": self.model,
            "temperature": self.temperature,
        }


def _format_error(err: Any) -> str:
    loc = ".".join(str(part) for part in err.get("loc", ())) or "config"
    msg = str(err.get("msg", "invalid value"))
    msg = msg.removeprefix("Value error, ")
    return f"{loc}: {msg}"


def merge_options(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = merge_options(dict(base[key]), value)
        else:
            base[key] = value
    return base


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

TEMPLATES: dict[str, dict[str, Any]] = {
    "support": {
        "max_sources": 3,
        "min_relevance_score": 0.4,
        "temperature": 0.3,
        "system_prompt": (
            "You are a helpful customer support agent. Provide accurate, friendly "
            "assistance based on available documentation."
        ),
        "response": {"include_sources": True, "safety_filter": True},
    },
    "sales": {
        "max_sources": 5,
        "min_relevance_score": 0.3,
        "temperature": 0.8,
        "system_prompt": (
            "You are a knowledgeable sales assistant. Help customers understand "
            "products and make informed decisions."
        ),
    },
    "coding": {
        "max_sources": 7,
        "context_window": 5,
        "temperature": 0.1,
        "system_prompt": (
            "You are a coding assistant. Provide accurate, well-documented code "
            "examples and technical guidance."
        ),
        "response": {"format_markdown": True},
    },
    "research": {
        "max_sources": 10,
        "min_relevance_score": 0.2,
        "temperature": 0.5,
        "search_weights": {"semantic": 0.5, "keyword": 0.2, "recency": 0.15, "diversity": 0.15},
        "system_prompt": (
            "You are a research assistant. Provide comprehensive, well-sourced "
            "information on requested topics."
        ),
    },
}
