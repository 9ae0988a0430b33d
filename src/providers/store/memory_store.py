"""In-process knowledge store.

Keeps everything in dictionaries and answers similarity queries with a
numpy cosine over the matching embeddings.  Suitable for tests, the CLI and
small single-process deployments; nothing survives a restart.

No method awaits while mutating state, so coroutine interleaving cannot
observe a half-applied write.
"""

from __future__ import annotations

from collections import Counter

import numpy as np
import structlog

from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.query import SearchFilters
from src.models.rag import Chunk, CorpusStats, Embedding, RetrievedChunk
from src.models.source import Source, SourceStatus
from src.models.training import TrainingJob
from src.models.usage import UsageRecord
from src.utils.text_normalizer import keyword_overlap
from src.utils.vector_math import cosine_similarities

logger = structlog.get_logger(logger_name=__name__)


class MemoryKnowledgeStore(IKnowledgeStore):
    """Dictionary-backed :class:`IKnowledgeStore`."""

    def __init__(self) -> None:
        self._sources: dict[str, Source] = {}
        self._chunks: dict[str, Chunk] = {}
        self._embeddings: dict[tuple[str, str], Embedding] = {}
        self._usage: list[UsageRecord] = []
        self._jobs: dict[str, TrainingJob] = {}

    def get_provider_name(self) -> str:
        return "memory"

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def save_source(self, source: Source) -> Source:
        self._sources[source.id] = source
        return source

    async def get_source(self, source_id: str) -> Source | None:
        return self._sources.get(source_id)

    async def list_sources(self, agent_id: str, include_inactive: bool = False) -> list[Source]:
        sources = [
            s
            for s in self._sources.values()
            if s.agent_id == agent_id and (include_inactive or s.is_active)
        ]
        return sorted(sources, key=lambda s: s.created_at)

    async def deactivate_source(self, source_id: str) -> int:
        count = 0
        for sid in self._with_descendants(source_id):
            source = self._sources[sid]
            if source.is_active:
                self._sources[sid] = source.model_copy(update={"is_active": False})
                count += 1
        logger.info("source_deactivated", source_id=source_id, count=count)
        return count

    async def delete_source(self, source_id: str) -> int:
        ids = self._with_descendants(source_id)
        for sid in ids:
            self._drop_chunks(sid)
            del self._sources[sid]
        logger.info("source_deleted", source_id=source_id, count=len(ids))
        return len(ids)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def save_chunks(self, chunks: list[Chunk]) -> int:
        for chunk in chunks:
            self._chunks[chunk.id] = chunk
        return len(chunks)

    async def get_chunks(self, source_id: str) -> list[Chunk]:
        chunks = [c for c in self._chunks.values() if c.source_id == source_id]
        return sorted(chunks, key=lambda c: c.chunk_index)

    async def delete_chunks(self, source_id: str) -> int:
        return self._drop_chunks(source_id)

    async def find_chunk_by_hash(self, agent_id: str, content_hash: str) -> Chunk | None:
        matches = [
            c
            for c in self._chunks.values()
            if c.agent_id == agent_id
            and c.content_hash == content_hash
            and not c.is_duplicate
            and self._is_live(c.source_id)
        ]
        if not matches:
            return None
        return min(matches, key=lambda c: c.created_at)

    async def find_orphaned_duplicates(self, agent_id: str) -> list[Chunk]:
        orphans = [
            c
            for c in self._chunks.values()
            if c.agent_id == agent_id
            and c.is_duplicate
            and self._is_live(c.source_id)
            and not self._is_live_canonical(c.duplicate_of)
        ]
        return sorted(orphans, key=lambda c: (c.created_at, c.chunk_index))

    async def find_unembedded_chunks(self, agent_id: str) -> list[Chunk]:
        embedded = {chunk_id for chunk_id, _ in self._embeddings}
        chunks = [
            c
            for c in self._chunks.values()
            if c.agent_id == agent_id
            and not c.is_duplicate
            and c.id not in embedded
            and self._is_active(c.source_id)
        ]
        return sorted(chunks, key=lambda c: (c.created_at, c.chunk_index))

    # ------------------------------------------------------------------
    # Embeddings and search
    # ------------------------------------------------------------------

    async def upsert_embeddings(self, embeddings: list[Embedding]) -> int:
        for embedding in embeddings:
            self._embeddings[(embedding.chunk_id, embedding.model)] = embedding
        return len(embeddings)

    async def get_embedding(self, chunk_id: str, model: str) -> Embedding | None:
        return self._embeddings.get((chunk_id, model))

    async def similarity_search(
        self,
        agent_id: str,
        vector: list[float],
        filters: SearchFilters,
        model: str | None = None,
    ) -> list[RetrievedChunk]:
        candidates: list[tuple[Chunk, Source, list[float]]] = []
        for embedding in self._embeddings.values():
            if embedding.agent_id != agent_id or (model and embedding.model != model):
                continue
            if len(embedding.vector) != len(vector):
                continue
            pair = self._searchable(embedding.chunk_id, filters)
            if pair is not None:
                candidates.append((*pair, embedding.vector))
        if not candidates:
            return []

        matrix = np.asarray([vec for _, _, vec in candidates], dtype=np.float32)
        sims = cosine_similarities(matrix, vector)

        best: dict[str, RetrievedChunk] = {}
        for (chunk, source, _), sim in zip(candidates, sims):
            similarity = float(sim)
            if similarity < filters.min_similarity:
                continue
            current = best.get(chunk.id)
            if current is None or similarity > current.similarity:
                best[chunk.id] = _retrieved(chunk, source, similarity, "semantic")

        ranked = sorted(best.values(), key=lambda r: r.similarity, reverse=True)
        return ranked[: filters.max_results]

    async def keyword_search(
        self,
        agent_id: str,
        keywords: list[str],
        filters: SearchFilters,
    ) -> list[RetrievedChunk]:
        terms = [k.lower() for k in keywords if k.strip()]
        if not terms:
            return []
        hits: list[RetrievedChunk] = []
        for chunk in self._chunks.values():
            if chunk.agent_id != agent_id:
                continue
            pair = self._searchable(chunk.id, filters)
            if pair is None:
                continue
            score = keyword_overlap(chunk.content, terms)
            if score > 0 and score >= filters.min_similarity:
                hits.append(_retrieved(chunk, pair[1], 0.0, "keyword", keyword_score=score))
        hits.sort(key=lambda r: r.keyword_score, reverse=True)
        return hits[: filters.max_results]

    # ------------------------------------------------------------------
    # Usage records and jobs
    # ------------------------------------------------------------------

    async def record_usage(self, record: UsageRecord) -> None:
        self._usage.append(record)

    async def list_usage(self, agent_id: str | None = None) -> list[UsageRecord]:
        return [r for r in self._usage if agent_id is None or r.agent_id == agent_id]

    async def save_job(self, job: TrainingJob) -> TrainingJob:
        self._jobs[job.id] = job
        return job

    async def get_job(self, job_id: str) -> TrainingJob | None:
        return self._jobs.get(job_id)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self, agent_id: str) -> CorpusStats:
        sources = [s for s in self._sources.values() if s.agent_id == agent_id]
        chunks = [c for c in self._chunks.values() if c.agent_id == agent_id]
        return CorpusStats(
            agent_id=agent_id,
            total_sources=len(sources),
            active_sources=sum(1 for s in sources if s.is_active),
            total_chunks=len(chunks),
            duplicate_chunks=sum(1 for c in chunks if c.is_duplicate),
            total_embeddings=sum(1 for e in self._embeddings.values() if e.agent_id == agent_id),
            sources_by_type=dict(Counter(s.source_type.value for s in sources)),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _with_descendants(self, source_id: str) -> list[str]:
        if source_id not in self._sources:
            return []
        ids = [source_id]
        frontier = [source_id]
        while frontier:
            parent = frontier.pop()
            children = [s.id for s in self._sources.values() if s.parent_id == parent]
            ids.extend(children)
            frontier.extend(children)
        return ids

    def _drop_chunks(self, source_id: str) -> int:
        chunk_ids = [cid for cid, c in self._chunks.items() if c.source_id == source_id]
        for cid in chunk_ids:
            del self._chunks[cid]
        dropped = set(chunk_ids)
        for key in [k for k in self._embeddings if k[0] in dropped]:
            del self._embeddings[key]
        return len(chunk_ids)

    def _is_active(self, source_id: str) -> bool:
        source = self._sources.get(source_id)
        return source is not None and source.is_active

    def _is_live(self, source_id: str) -> bool:
        source = self._sources.get(source_id)
        return source is not None and source.is_active and source.status != SourceStatus.FAILED

    def _is_live_canonical(self, chunk_id: str | None) -> bool:
        chunk = self._chunks.get(chunk_id) if chunk_id else None
        return chunk is not None and not chunk.is_duplicate and self._is_live(chunk.source_id)

    def _searchable(self, chunk_id: str, filters: SearchFilters) -> tuple[Chunk, Source] | None:
        chunk = self._chunks.get(chunk_id)
        if chunk is None or chunk.is_duplicate or not self._is_live(chunk.source_id):
            return None
        source = self._sources[chunk.source_id]
        if filters.source_types and source.source_type not in filters.source_types:
            return None
        return chunk, source


def _retrieved(
    chunk: Chunk,
    source: Source,
    similarity: float,
    matched_by: str,
    keyword_score: float = 0.0,
) -> RetrievedChunk:
    return RetrievedChunk(
        chunk=chunk,
        similarity=max(0.0, min(1.0, similarity)),
        keyword_score=keyword_score,
        source_name=source.display_name,
        source_type=source.source_type,
        source_updated_at=source.updated_at,
        matched_by=matched_by,
    )
