"""Orchestrator for the document ingestion pipeline.

Pipeline phases: **extract -> compress -> chunk -> deduplicate -> embed**.

The :class:`IngestionService` coordinates the ingestion collaborators
without any of them knowing about each other.  For one source it:

    1. ContentExtractor -- reduces markup to clean text (plain text passes through)
    2. CompressionEngine -- archives the raw document, analyses the cleaned
       text and picks a processing mode (summary, chunking, template-removal)
    3. SemanticChunker -- splits the text into token-bounded chunks (summary
       mode keeps the whole text as one chunk)
    4. DeduplicationEngine -- drops repeated sentences inside each chunk, then
       flags chunks already known to the agent and stores them all
    5. EmbeddingRouter -- embeds the non-duplicate chunks; vectors are
       upserted by (chunk, model)

Every run is recorded as a :class:`TrainingJob`.  When a phase fails the
source and the job are marked failed with the phase name, writes from
earlier phases are left in place, and an :class:`IngestionPhaseError` is
raised to the caller.

Re-ingesting an existing ``source_id`` replaces that source's chunks.
Every ingestion or removal drops the agent's cached answers.
Ingesting identical content under a new source id stores every chunk as
a duplicate of the first copy.  When that first copy is removed,
re-ingested or fails, the oldest surviving duplicate is promoted and
embedded in its place.  :meth:`IngestionService.backfill_embeddings`
embeds any canonical chunk still left without a vector.

All dependencies are injected via constructor, so providers and stores can
be swapped without changing this class.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from uuid import uuid4

import structlog

from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.rag import Chunk, ChunkMetadata, CorpusStats, Embedding, IngestionResult
from src.models.source import CompressionMetadata, IngestRequest, Source, SourceStatus
from src.models.training import JobStatus, TrainingJob
from src.pipeline.progress_tracker import ProgressTracker
from src.services.embedding_router import EmbeddingRouter
from src.services.ingestion.chunker import ChunkDraft, SemanticChunker
from src.services.ingestion.compression import CompressionEngine, ProcessingMode
from src.services.ingestion.content_extractor import ContentExtractor
from src.services.ingestion.deduplication import DeduplicationEngine
from src.services.response_cache import ResponseCache
from src.utils.concurrency import throttled_gather
from src.utils.errors import AgentRAGError, IngestionPhaseError, ValidationError
from src.utils.text_normalizer import (
    clean_for_chunking,
    estimate_tokens,
    extract_keywords,
    summarize,
)

logger = structlog.get_logger(logger_name=__name__)


class IngestionService:
    """Turns uploaded or crawled documents into searchable knowledge.

    Parameters
    ----------
    store:
        Knowledge store receiving sources, chunks, embeddings and jobs.
    embedding_router:
        Embeds the unique chunks of each source.
    extractor, compression, chunker, deduplication:
        Phase collaborators; defaults are built when omitted.
    progress_tracker:
        Optional observer notified on every job update.
    max_concurrent_sources:
        Ceiling for :meth:`ingest_many`.
    embedding_provider:
        Preferred embedding provider name, passed to the router.
    response_cache:
        Answer cache whose entries for an agent are dropped whenever that
        agent's sources change.
    """

    def __init__(
        self,
        store: IKnowledgeStore,
        embedding_router: EmbeddingRouter,
        extractor: ContentExtractor | None = None,
        compression: CompressionEngine | None = None,
        chunker: SemanticChunker | None = None,
        deduplication: DeduplicationEngine | None = None,
        progress_tracker: ProgressTracker | None = None,
        max_concurrent_sources: int = 4,
        embedding_provider: str | None = None,
        response_cache: ResponseCache | None = None,
    ) -> None:
        self._store = store
        self._embeddings = embedding_router
        self._extractor = extractor or ContentExtractor()
        self._compression = compression or CompressionEngine()
        self._chunker = chunker or SemanticChunker()
        self._dedup = deduplication or DeduplicationEngine(store)
        self._progress = progress_tracker
        self._max_concurrent = max(1, max_concurrent_sources)
        self._embedding_provider = embedding_provider
        self._cache = response_cache

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ingest(self, request: IngestRequest) -> IngestionResult:
        """Ingest one source under its own training job.

        Raises
        ------
        ValidationError
            If the request has no agent id or no content.
        IngestionPhaseError
            If a phase fails; the job and source are marked failed.
        """
        self._validate(request)
        job = await self._start_job(request.agent_id, total_sources=1)
        job_lock = asyncio.Lock()
        try:
            result = await self._ingest_source(request, job.id)
        except IngestionPhaseError as exc:
            await self._finish_job(job.id, job_lock, failed=[exc])
            await self._invalidate_cache(request.agent_id)
            raise
        except ValidationError as exc:
            failure = IngestionPhaseError(exc.message, phase="validation", job_id=job.id)
            await self._finish_job(job.id, job_lock, failed=[failure])
            raise
        await self._record_source_done(job.id, job_lock, result)
        await self._finish_job(job.id, job_lock, failed=[])
        await self._invalidate_cache(request.agent_id)
        return result.model_copy(update={"job_id": job.id})

    async def ingest_many(
        self, requests: list[IngestRequest]
    ) -> list[IngestionResult | IngestionPhaseError]:
        """Ingest several sources of one agent concurrently under one job.

        Sources are processed at most ``max_concurrent_sources`` at a time.
        A failed source does not stop the others; its
        :class:`IngestionPhaseError` takes its place in the returned list and
        the job ends ``failed`` listing every failure.
        """
        if not requests:
            return []
        for request in requests:
            self._validate(request)
        agent_ids = {r.agent_id for r in requests}
        if len(agent_ids) != 1:
            raise ValidationError(errors=["requests: all sources must belong to one agent"])

        job = await self._start_job(requests[0].agent_id, total_sources=len(requests))
        job_lock = asyncio.Lock()

        async def _one(request: IngestRequest) -> IngestionResult:
            try:
                result = await self._ingest_source(request, job.id)
            except ValidationError as exc:
                raise IngestionPhaseError(exc.message, phase="validation", job_id=job.id) from exc
            await self._record_source_done(job.id, job_lock, result)
            return result.model_copy(update={"job_id": job.id})

        outcomes = await throttled_gather(
            [_one(r) for r in requests],
            semaphore=asyncio.Semaphore(self._max_concurrent),
        )
        results: list[IngestionResult | IngestionPhaseError] = []
        failures: list[IngestionPhaseError] = []
        for outcome in outcomes:
            if isinstance(outcome, IngestionPhaseError):
                failures.append(outcome)
                results.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        await self._finish_job(job.id, job_lock, failed=failures)
        await self._invalidate_cache(job.agent_id)
        return results

    async def remove_source(self, source_id: str, purge: bool = False) -> int:
        """Soft-delete (or purge) a source and its children; return the count."""
        source = await self._store.get_source(source_id)
        if purge:
            removed = await self._store.delete_source(source_id)
        else:
            removed = await self._store.deactivate_source(source_id)
        logger.info("source_removed", source_id=source_id, purge=purge, count=removed)
        if removed and source is not None:
            await self._restore_canonicals(source.agent_id)
            await self._invalidate_cache(source.agent_id)
        return removed

    async def backfill_embeddings(self, agent_id: str) -> int:
        """Embed canonical chunks that have no vector yet; return the count written.

        This resumes sources whose embedding phase failed and covers
        promoted duplicates whose vectors could not be written at the time.
        Chunks are deduplicated again first, so content that another source
        now owns becomes a duplicate instead of a second canonical.  A
        failed source is marked completed once every canonical chunk it
        holds has a vector.

        Raises
        ------
        UpstreamProviderError
            If the embedding provider fails; nothing is marked completed.
        """
        missing = await self._store.find_unembedded_chunks(agent_id)
        sources: dict[str, Source] = {}
        for chunk in missing:
            if chunk.source_id not in sources:
                source = await self._store.get_source(chunk.source_id)
                if source is not None:
                    sources[source.id] = source
        # sources still ingesting embed their own chunks
        pending = [
            c
            for c in missing
            if c.source_id in sources and sources[c.source_id].status != SourceStatus.PROCESSING
        ]
        if not pending:
            return 0

        deduped = await self._dedup.deduplicate_and_store(pending, agent_id)
        embeddings = await self._embed(deduped.unique, agent_id)

        revived = [s for s in sources.values() if s.status == SourceStatus.FAILED]
        for source in revived:
            await self._store.save_source(
                source.model_copy(
                    update={"status": SourceStatus.COMPLETED, "error": None, "updated_at": _utcnow()}
                )
            )
        logger.info(
            "embeddings_backfilled",
            agent_id=agent_id,
            embeddings=len(embeddings),
            duplicates=len(deduped.duplicates),
            sources_revived=len(revived),
        )
        if embeddings or revived:
            await self._invalidate_cache(agent_id)
        return len(embeddings)

    async def get_job(self, job_id: str) -> TrainingJob | None:
        return await self._store.get_job(job_id)

    async def get_corpus_stats(self, agent_id: str) -> CorpusStats:
        return await self._store.get_stats(agent_id)

    # ------------------------------------------------------------------
    # Per-source pipeline
    # ------------------------------------------------------------------

    async def _ingest_source(self, request: IngestRequest, job_id: str) -> IngestionResult:
        start = time.monotonic()
        with _phase("storage", job_id):
            source = await self._open_source(request)
        log = logger.bind(agent_id=request.agent_id, source_id=source.id, job_id=job_id)

        try:
            with _phase("extraction", job_id):
                source, cleaned = self._extract(request, source)

            with _phase("compression", job_id):
                archived = self._compression.compress(request.content)
                analysis = self._compression.analyze(cleaned)
                mode = self._compression.select_processing_mode(analysis, len(cleaned))
                if mode == ProcessingMode.TEMPLATE_REMOVAL:
                    cleaned = self._compression.remove_template(cleaned) or cleaned
                source = source.model_copy(
                    update={
                        "cleaned_content": cleaned,
                        "compressed_content": archived.compressed,
                        "compression": CompressionMetadata(
                            original_size=archived.original_size,
                            compressed_size=archived.compressed_size,
                            ratio=archived.ratio,
                            method=archived.method,
                        ),
                        "processing_mode": mode.value,
                        "summary": summarize(cleaned),
                        "keywords": extract_keywords(cleaned),
                        "updated_at": _utcnow(),
                    }
                )
                await self._store.save_source(source)
            log.info(
                "source_analyzed",
                content_type=analysis.content_type.value,
                mode=mode.value,
                compression=archived.method,
                ratio=archived.ratio,
            )

            with _phase("chunking", job_id):
                drafts = self._draft_chunks(cleaned, mode)
                if not drafts:
                    raise IngestionPhaseError(
                        "No chunk met the size and quality thresholds",
                        phase="chunking",
                        job_id=job_id,
                    )
                chunks: list[Chunk] = []
                sentences_removed = 0
                for draft in drafts:
                    chunk, removed = self._dedup.apply_sentence_dedup(
                        Chunk(
                            source_id=source.id,
                            agent_id=source.agent_id,
                            chunk_index=draft.index,
                            content=draft.content,
                            token_count=draft.token_count,
                            metadata=draft.metadata,
                        )
                    )
                    sentences_removed += removed
                    chunks.append(chunk)

            with _phase("deduplication", job_id):
                deduped = await self._dedup.deduplicate_and_store(chunks, source.agent_id)

            with _phase("embedding", job_id):
                embeddings = await self._embed(
                    deduped.unique, source.agent_id, source_id=source.id
                )
        except IngestionPhaseError as exc:
            log.error("ingestion_phase_failed", phase=exc.phase, error=exc.message)
            await self._store.save_source(
                source.model_copy(
                    update={
                        "status": SourceStatus.FAILED,
                        "error": f"{exc.phase}: {exc.message}",
                        "updated_at": _utcnow(),
                    }
                )
            )
            # a failed source no longer anchors duplicates elsewhere
            await self._restore_canonicals(source.agent_id)
            raise

        await self._store.save_source(
            source.model_copy(
                update={"status": SourceStatus.COMPLETED, "error": None, "updated_at": _utcnow()}
            )
        )
        elapsed = round(time.monotonic() - start, 3)
        log.info(
            "source_ingested",
            chunks=len(chunks),
            duplicates=deduped.stats.duplicate_count,
            sentences_removed=sentences_removed,
            embeddings=len(embeddings),
            elapsed_s=elapsed,
        )
        return IngestionResult(
            source_id=source.id,
            agent_id=source.agent_id,
            job_id=job_id,
            processing_mode=mode.value,
            chunks_created=len(chunks),
            unique_chunks=len(deduped.unique),
            duplicate_chunks=len(deduped.duplicates),
            embeddings_created=len(embeddings),
            total_tokens=sum(c.token_count for c in chunks),
            compression_method=archived.method,
            compression_ratio=archived.ratio,
            ingestion_time=elapsed,
        )

    async def _open_source(self, request: IngestRequest) -> Source:
        """Create the source row, or reset an existing one for re-ingestion."""
        existing = await self._store.get_source(request.source_id) if request.source_id else None
        if existing is not None:
            if existing.agent_id != request.agent_id:
                raise ValidationError(
                    errors=[f"source_id: {existing.id} belongs to another agent"]
                )
            removed = await self._store.delete_chunks(existing.id)
            logger.info("source_reingest", source_id=existing.id, chunks_removed=removed)
            if removed:
                await self._restore_canonicals(existing.agent_id)

        source = Source(
            id=request.source_id or str(uuid4()),
            agent_id=request.agent_id,
            source_type=request.source_type,
            url=request.url,
            title=request.title or "",
            raw_content=request.content,
            status=SourceStatus.PROCESSING,
            parent_id=request.parent_id,
            created_at=existing.created_at if existing else _utcnow(),
        )
        await self._store.save_source(source)
        return source

    def _extract(self, request: IngestRequest, source: Source) -> tuple[Source, str]:
        is_markup = (
            request.is_markup
            if request.is_markup is not None
            else self._extractor.looks_like_markup(request.content)
        )
        if is_markup:
            extracted = self._extractor.extract(request.content, url=request.url)
            text, title, method = extracted.content, request.title or extracted.title, extracted.method
        else:
            text, title, method = request.content, request.title or "", "plain"

        cleaned = clean_for_chunking(text)
        if not cleaned.strip():
            raise IngestionPhaseError("No extractable text content", phase="extraction")
        return source.model_copy(update={"title": title, "extraction_method": method}), cleaned

    def _draft_chunks(self, cleaned: str, mode: ProcessingMode) -> list[ChunkDraft]:
        if mode != ProcessingMode.SUMMARY:
            return self._chunker.create_chunks(cleaned)
        content = cleaned.strip()
        return [
            ChunkDraft(
                index=0,
                content=content,
                token_count=estimate_tokens(content),
                metadata=ChunkMetadata(
                    content_type=self._chunker.classify_structure(content),
                    complexity=self._chunker.classify_complexity(content),
                    quality_score=self._chunker.quality_score(content),
                    keywords=extract_keywords(content, limit=5),
                ),
            )
        ]

    async def _embed(
        self, chunks: list[Chunk], agent_id: str, source_id: str | None = None
    ) -> list[Embedding]:
        vectors = await self._embeddings.embed_batch(
            [c.content for c in chunks],
            provider=self._embedding_provider,
            agent_id=agent_id,
            source_id=source_id,
        )
        embeddings = [
            Embedding(
                chunk_id=chunk.id,
                agent_id=chunk.agent_id,
                source_id=chunk.source_id,
                model=result.model,
                vector=result.vector,
            )
            for chunk, result in zip(chunks, vectors)
        ]
        if embeddings:
            await self._store.upsert_embeddings(embeddings)
        return embeddings

    async def _restore_canonicals(self, agent_id: str) -> None:
        """Promote and embed duplicates left without a live canonical."""
        promoted = await self._dedup.promote_orphans(agent_id)
        if not promoted:
            return
        try:
            await self._embed(promoted, agent_id)
        except AgentRAGError as exc:
            # backfill_embeddings() picks these up later
            logger.warning(
                "promoted_chunks_unembedded",
                agent_id=agent_id,
                chunks=len(promoted),
                error=exc.message,
            )

    # ------------------------------------------------------------------
    # Job bookkeeping
    # ------------------------------------------------------------------

    async def _start_job(self, agent_id: str, total_sources: int) -> TrainingJob:
        job = TrainingJob(agent_id=agent_id, total_sources=total_sources)
        job = job.transition(JobStatus.IN_PROGRESS)
        await self._save_job(job)
        logger.info("training_job_started", job_id=job.id, agent_id=agent_id, sources=total_sources)
        return job

    async def _record_source_done(
        self, job_id: str, lock: asyncio.Lock, result: IngestionResult
    ) -> None:
        async with lock:
            job = await self._require_job(job_id)
            await self._save_job(
                job.model_copy(
                    update={
                        "processed_sources": job.processed_sources + 1,
                        "total_chunks": job.total_chunks + result.chunks_created,
                        "processed_chunks": job.processed_chunks + result.chunks_created,
                    }
                )
            )

    async def _finish_job(
        self, job_id: str, lock: asyncio.Lock, failed: list[IngestionPhaseError]
    ) -> None:
        async with lock:
            job = await self._require_job(job_id)
            if failed:
                error = "; ".join(f"{e.phase}: {e.message}" for e in failed)
                job = job.transition(
                    JobStatus.FAILED,
                    error=error,
                    failed_phase=failed[0].phase,
                )
            else:
                job = job.transition(JobStatus.COMPLETED)
            await self._save_job(job)
        logger.info(
            "training_job_finished",
            job_id=job_id,
            status=job.status.value,
            processed_sources=job.processed_sources,
            failed_sources=len(failed),
        )

    async def _require_job(self, job_id: str) -> TrainingJob:
        job = await self._store.get_job(job_id)
        if job is None:
            raise IngestionPhaseError("Training job disappeared", phase="storage", job_id=job_id)
        return job

    async def _invalidate_cache(self, agent_id: str) -> None:
        if self._cache is not None:
            await self._cache.invalidate(agent_id)

    async def _save_job(self, job: TrainingJob) -> None:
        await self._store.save_job(job)
        if self._progress is not None:
            await self._progress.update(job)

    @staticmethod
    def _validate(request: IngestRequest) -> None:
        errors: list[str] = []
        if not request.agent_id.strip():
            errors.append("agent_id: must not be empty")
        if not request.content.strip():
            errors.append("content: must not be empty")
        if errors:
            raise ValidationError(errors=errors)


@contextmanager
def _phase(name: str, job_id: str) -> Iterator[None]:
    """Re-raise any failure inside the block as an :class:`IngestionPhaseError`."""
    try:
        yield
    except ValidationError:
        raise
    except IngestionPhaseError as exc:
        if exc.job_id is None:
            raise IngestionPhaseError(
                exc.message, phase=exc.phase, job_id=job_id, provider_name=exc.provider_name
            ) from exc
        raise
    except AgentRAGError as exc:
        raise IngestionPhaseError(
            exc.message, phase=name, job_id=job_id, provider_name=exc.provider_name
        ) from exc
    except Exception as exc:
        raise IngestionPhaseError(f"{type(exc).__name__}: {exc}", phase=name, job_id=job_id) from exc


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017
