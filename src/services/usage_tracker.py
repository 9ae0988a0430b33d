"""Token usage and cost tracking.

Every LLM completion and embedding batch is recorded as an append-only
:class:`UsageRecord` in the knowledge store.  Cost is derived from a static
per-1K-token price table; local providers (Ollama, Nomic) cost nothing and
unknown models are recorded at zero cost with a warning.

Recording is best effort: a store failure is logged and swallowed so that a
billing write can never fail a user-facing answer.
"""

from __future__ import annotations

from collections import defaultdict

import structlog

from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.usage import (
    TokenUsage,
    UsageMetrics,
    UsageOperation,
    UsageRecord,
    UsageTotals,
)

logger = structlog.get_logger(logger_name=__name__)

# USD per 1,000 tokens: (input, output).
COST_PER_1K_TOKENS: dict[str, tuple[float, float]] = {
    "gpt-4o": (0.005, 0.015),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-3.5-turbo": (0.0005, 0.0015),
    "claude-3-5-sonnet-20241022": (0.003, 0.015),
    "claude-3-5-haiku-20241022": (0.0008, 0.004),
    "claude-3-opus-20240229": (0.015, 0.075),
    "text-embedding-3-small": (0.00002, 0.0),
    "text-embedding-3-large": (0.00013, 0.0),
    "text-embedding-ada-002": (0.0001, 0.0),
}

_FREE_PROVIDERS = frozenset({"ollama", "nomic"})


class UsageTracker:
    """Computes cost and writes usage records.

    Parameters
    ----------
    store:
        Knowledge store the records are appended to.
    prices:
        Optional override of :data:`COST_PER_1K_TOKENS`.
    """

    def __init__(
        self,
        store: IKnowledgeStore,
        prices: dict[str, tuple[float, float]] | None = None,
    ) -> None:
        self._store = store
        self._prices = dict(prices or COST_PER_1K_TOKENS)

    def calculate_cost(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
        """Return the USD cost of a call; 0.0 for local or unpriced models."""
        if provider in _FREE_PROVIDERS:
            return 0.0
        price = self._prices.get(model)
        if price is None:
            logger.warning("usage_cost_unknown_model", provider=provider, model=model)
            return 0.0
        input_price, output_price = price
        return round(input_tokens / 1000 * input_price + output_tokens / 1000 * output_price, 8)

    async def record(
        self,
        provider: str,
        model: str,
        operation: UsageOperation,
        usage: TokenUsage,
        agent_id: str | None = None,
        source_id: str | None = None,
    ) -> UsageRecord | None:
        """Append a usage record; return it, or ``None`` if the write failed."""
        record = UsageRecord(
            agent_id=agent_id,
            source_id=source_id,
            provider=provider,
            model=model,
            operation=operation,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=self.calculate_cost(provider, model, usage.input_tokens, usage.output_tokens),
        )
        try:
            await self._store.record_usage(record)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "usage_record_failed",
                provider=provider,
                model=model,
                agent_id=agent_id,
                error=str(exc),
            )
            return None
        logger.debug(
            "usage_recorded",
            provider=provider,
            model=model,
            operation=operation.value,
            tokens=usage.total_tokens,
            cost=record.cost,
            estimated=usage.estimated,
        )
        return record

    async def get_metrics(self, agent_id: str | None = None) -> UsageMetrics:
        """Aggregate stored records, optionally for one agent."""
        records = await self._store.list_usage(agent_id)
        by_provider: dict[str, list[int | float]] = defaultdict(lambda: [0, 0.0])
        by_agent: dict[str, list[int | float]] = defaultdict(lambda: [0, 0.0])
        by_operation: dict[str, list[int | float]] = defaultdict(lambda: [0, 0.0])
        total_tokens = 0
        total_cost = 0.0
        for record in records:
            tokens = record.input_tokens + record.output_tokens
            total_tokens += tokens
            total_cost += record.cost
            for bucket, key in (
                (by_provider, record.provider),
                (by_agent, record.agent_id or "unknown"),
                (by_operation, record.operation.value),
            ):
                bucket[key][0] += tokens
                bucket[key][1] += record.cost

        def _totals(bucket: dict[str, list[int | float]]) -> dict[str, UsageTotals]:
            return {
                key: UsageTotals(tokens=int(v[0]), cost=round(float(v[1]), 8))
                for key, v in bucket.items()
            }

        return UsageMetrics(
            total_tokens=total_tokens,
            total_cost=round(total_cost, 8),
            record_count=len(records),
            by_provider=_totals(by_provider),
            by_agent=_totals(by_agent),
            by_operation=_totals(by_operation),
        )
