"""Context ranking, diversity filtering and token-budget pruning.

Each candidate is scored as::

    score = (semantic  * similarity
           + keyword   * keyword_overlap
           + recency   * recency_score
           + diversity * novelty) * source_type_weight

where ``similarity`` is the store's cosine similarity (zero for pure
keyword hits), ``keyword_overlap`` is the fraction of query keywords the
chunk contains as whole words, ``recency_score`` decays linearly to zero
over a year, and ``novelty`` is one minus the chunk's highest word
overlap with chunks already selected.  Because novelty depends on what
is already chosen, selection is greedy: the highest-scoring remaining
candidate is taken next.

Diversity caps any one source at ``max(2, max_chunks // 3)`` chunks.  The
budget pass keeps whole chunks in rank order until the next one would
overflow ``max_tokens``; the bundle never exceeds the budget.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from src.models.query import (
    ContextBundle,
    ProcessedQuery,
    RankedChunk,
    RankingOptions,
    SourceAttribution,
)
from src.models.rag import RetrievedChunk
from src.utils.text_normalizer import (
    estimate_tokens,
    keyword_overlap,
    tokenize_words,
    truncate_to_tokens,
)

logger = structlog.get_logger(logger_name=__name__)

_RECENCY_HORIZON_DAYS = 365.0


class ContextRanker:
    """Ranks retrieved chunks into a token-bounded :class:`ContextBundle`."""

    def __init__(self, now: datetime | None = None) -> None:
        self._fixed_now = now

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def rank(
        self,
        candidates: list[RetrievedChunk],
        query: ProcessedQuery,
        options: RankingOptions | None = None,
    ) -> ContextBundle:
        """Score, diversify and prune *candidates*."""
        opts = options or RankingOptions()
        if not candidates:
            return ContextBundle()

        per_source_cap = max(2, opts.max_chunks // 3)
        base = {c.chunk.id: self._base_factors(c, query) for c in candidates}
        words = {c.chunk.id: set(tokenize_words(c.chunk.content)) for c in candidates}

        remaining = list(candidates)
        selected: list[RankedChunk] = []
        per_source: dict[str, int] = {}
        while remaining and len(selected) < opts.max_chunks:
            scored = [
                self._score(c, base[c.chunk.id], words, selected, opts) for c in remaining
            ]
            best = max(scored, key=lambda r: r.score)
            remaining = [c for c in remaining if c.chunk.id != best.retrieved.chunk.id]
            source_id = best.source_id
            if per_source.get(source_id, 0) >= per_source_cap:
                continue
            per_source[source_id] = per_source.get(source_id, 0) + 1
            selected.append(best)

        pruned = self._prune(selected, opts.max_tokens)
        bundle = self._bundle(pruned)
        logger.debug(
            "context_ranked",
            candidates=len(candidates),
            selected=len(selected),
            kept=len(bundle.chunks),
            total_tokens=bundle.total_tokens,
        )
        return bundle

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _base_factors(self, candidate: RetrievedChunk, query: ProcessedQuery) -> dict[str, float]:
        similarity = candidate.similarity if candidate.matched_by == "semantic" else 0.0
        overlap = keyword_overlap(candidate.chunk.content, query.keywords)
        return {
            "semantic": similarity,
            "keyword": overlap,
            "recency": self._recency(candidate),
        }

    def _score(
        self,
        candidate: RetrievedChunk,
        factors: dict[str, float],
        words: dict[str, set[str]],
        selected: list[RankedChunk],
        opts: RankingOptions,
    ) -> RankedChunk:
        novelty = 1.0
        mine = words[candidate.chunk.id]
        for chosen in selected:
            theirs = words[chosen.retrieved.chunk.id]
            union = mine | theirs
            if union:
                novelty = min(novelty, 1.0 - len(mine & theirs) / len(union))

        weights = opts.weights
        type_weight = opts.source_type_weights.get(candidate.source_type.value, 1.0)
        raw = (
            weights.semantic * factors["semantic"]
            + weights.keyword * factors["keyword"]
            + weights.recency * factors["recency"]
            + weights.diversity * novelty
        )
        return RankedChunk(
            retrieved=candidate,
            score=round(raw * type_weight, 6),
            factors={**factors, "diversity": novelty, "source_type_weight": type_weight},
        )

    def _recency(self, candidate: RetrievedChunk) -> float:
        stamp = candidate.source_updated_at or candidate.chunk.created_at
        now = self._fixed_now or datetime.now(tz=timezone.utc)  # noqa: UP017
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)  # noqa: UP017
        age_days = max(0.0, (now - stamp).total_seconds() / 86400)
        return max(0.0, 1.0 - age_days / _RECENCY_HORIZON_DAYS)

    # ------------------------------------------------------------------
    # Budget and assembly
    # ------------------------------------------------------------------

    @staticmethod
    def _prune(selected: list[RankedChunk], max_tokens: int) -> list[RankedChunk]:
        """Keep whole chunks in rank order while they fit in *max_tokens*.

        If even the best chunk is over budget it is truncated to fit, so a
        non-empty candidate list always yields some context.
        """
        kept: list[RankedChunk] = []
        total = 0
        for ranked in selected:
            tokens = estimate_tokens(ranked.retrieved.chunk.content)
            if total + tokens <= max_tokens:
                kept.append(ranked)
                total += tokens
                continue
            if not kept:
                content = truncate_to_tokens(ranked.retrieved.chunk.content, max_tokens)
                chunk = ranked.retrieved.chunk.model_copy(
                    update={"content": content, "token_count": estimate_tokens(content)}
                )
                kept.append(
                    ranked.model_copy(
                        update={"retrieved": ranked.retrieved.model_copy(update={"chunk": chunk})}
                    )
                )
            break
        return kept

    @staticmethod
    def _bundle(chunks: list[RankedChunk]) -> ContextBundle:
        if not chunks:
            return ContextBundle()
        sources: dict[str, SourceAttribution] = {}
        for ranked in chunks:
            retrieved = ranked.retrieved
            existing = sources.get(ranked.source_id)
            if existing is None:
                sources[ranked.source_id] = SourceAttribution(
                    source_id=ranked.source_id,
                    source_name=retrieved.source_name,
                    source_type=retrieved.source_type,
                    chunk_count=1,
                )
            else:
                sources[ranked.source_id] = existing.model_copy(
                    update={"chunk_count": existing.chunk_count + 1}
                )
        return ContextBundle(
            chunks=chunks,
            total_tokens=sum(estimate_tokens(r.retrieved.chunk.content) for r in chunks),
            relevance_score=round(sum(r.retrieved.similarity for r in chunks) / len(chunks), 4),
            diversity_score=round(len(sources) / len(chunks), 4),
            sources=list(sources.values()),
        )
