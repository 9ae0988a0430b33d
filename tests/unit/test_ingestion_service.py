"""Unit tests for IngestionService."""

from __future__ import annotations

import pytest

from src.interfaces.embedding_provider import EmbeddingBatch
from src.models.agent_config import AgentRAGConfig
from src.models.query import SearchFilters
from src.models.source import IngestRequest, SourceStatus
from src.models.training import JobStatus, TrainingJob
from src.pipeline.progress_tracker import ProgressTracker
from src.providers.store.memory_store import MemoryKnowledgeStore
from src.services.embedding_router import EmbeddingRouter
from src.services.ingestion import (
    ChunkingOptions,
    DeduplicationEngine,
    IngestionService,
    SemanticChunker,
)
from src.services.query import QueryEngine
from src.services.response_cache import ResponseCache
from src.utils.errors import EmbeddingError, IngestionPhaseError, ValidationError
from tests.conftest import (
    BILLING_FAQ,
    PASSWORD_FAQ,
    SHIPPING_FAQ,
    MockEmbeddingProvider,
    text_request,
)


class _WarehouseAllergicProvider(MockEmbeddingProvider):
    """Fails terminally whenever a text mentions the warehouse."""

    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingBatch:
        if any("warehouse" in t for t in texts):
            self.calls.append(list(texts))
            raise EmbeddingError("content rejected", provider_name="picky")
        return await super().embed(texts, model)


def _long_document(count: int = 30) -> str:
    return "\n\n".join(
        f"Section {i} describes configuration area {i} for administrators. "
        f"Option group {i} controls retention for workspace {i}. "
        f"Changes to group {i} apply after the nightly sync."
        for i in range(1, count + 1)
    )


def _service(
    store: MemoryKnowledgeStore,
    provider: MockEmbeddingProvider,
    progress_tracker: ProgressTracker | None = None,
    **kwargs,
) -> IngestionService:
    router = EmbeddingRouter(
        {"mock": provider}, default_provider="mock", batch_delay=0.0, retry_wait_multiplier=0.0
    )
    return IngestionService(
        store=store,
        embedding_router=router,
        deduplication=DeduplicationEngine(store),
        progress_tracker=progress_tracker,
        **kwargs,
    )


# ======================================================================
# ingest()
# ======================================================================


class TestIngest:
    @pytest.mark.asyncio
    async def test_small_source_is_one_summary_chunk(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        result = await ingestion_service.ingest(text_request(PASSWORD_FAQ, title="Password FAQ"))

        assert result.processing_mode == "summary"
        assert (result.chunks_created, result.unique_chunks, result.embeddings_created) == (1, 1, 1)
        assert result.duplicate_chunks == 0
        assert result.job_id is not None

        source = await memory_store.get_source(result.source_id)
        assert source is not None
        assert source.status == SourceStatus.COMPLETED
        assert source.title == "Password FAQ"
        assert source.cleaned_content
        assert source.compression.method
        assert "password" in source.keywords

        chunks = await memory_store.get_chunks(result.source_id)
        assert len(chunks) == 1
        assert chunks[0].content == PASSWORD_FAQ
        assert await memory_store.get_embedding(chunks[0].id, "mock-embed-v1") is not None

        job = await ingestion_service.get_job(result.job_id)
        assert job is not None
        assert job.status == JobStatus.COMPLETED
        assert job.processed_sources == 1
        assert job.total_chunks == 1

    @pytest.mark.asyncio
    async def test_long_source_is_chunked(self, memory_store: MemoryKnowledgeStore) -> None:
        chunker = SemanticChunker(
            ChunkingOptions(
                target_size=80,
                max_size=120,
                min_size=10,
                overlap_size=15,
                dynamic_sizing=False,
                min_chars=20,
            )
        )
        service = _service(memory_store, MockEmbeddingProvider(), chunker=chunker)

        result = await service.ingest(text_request(_long_document()))

        assert result.processing_mode == "chunking"
        assert result.chunks_created > 1
        assert result.embeddings_created == result.unique_chunks
        chunks = await memory_store.get_chunks(result.source_id)
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))

    @pytest.mark.asyncio
    async def test_markup_is_extracted(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        markup = (
            "<html><head><title>Password help</title></head><body>"
            "<nav>Home | Pricing | Blog</nav>"
            f"<main><p>{PASSWORD_FAQ}</p></main>"
            "<footer>All rights reserved.</footer></body></html>"
        )

        result = await ingestion_service.ingest(text_request(markup))

        source = await memory_store.get_source(result.source_id)
        assert source is not None
        assert source.title == "Password help"
        assert source.extraction_method != "plain"
        assert "<main>" not in source.cleaned_content
        assert "reset link" in source.cleaned_content

    @pytest.mark.asyncio
    async def test_same_content_under_new_id_is_duplicate(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        first = await ingestion_service.ingest(text_request(PASSWORD_FAQ))
        second = await ingestion_service.ingest(text_request(PASSWORD_FAQ))

        assert second.duplicate_chunks == 1
        assert second.unique_chunks == 0
        assert second.embeddings_created == 0
        original = (await memory_store.get_chunks(first.source_id))[0]
        copy = (await memory_store.get_chunks(second.source_id))[0]
        assert copy.is_duplicate
        assert copy.duplicate_of == original.id

    @pytest.mark.asyncio
    async def test_same_content_for_other_agent_is_not_duplicate(
        self, ingestion_service: IngestionService
    ) -> None:
        await ingestion_service.ingest(text_request(PASSWORD_FAQ, agent_id="support-bot"))
        other = await ingestion_service.ingest(text_request(PASSWORD_FAQ, agent_id="docs-bot"))

        assert other.duplicate_chunks == 0
        assert other.embeddings_created == 1

    @pytest.mark.asyncio
    async def test_reingest_replaces_chunks(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        await ingestion_service.ingest(text_request(PASSWORD_FAQ, source_id="faq-1"))
        again = await ingestion_service.ingest(text_request(PASSWORD_FAQ, source_id="faq-1"))
        assert again.duplicate_chunks == 0

        await ingestion_service.ingest(text_request(BILLING_FAQ, source_id="faq-1"))

        chunks = await memory_store.get_chunks("faq-1")
        assert [c.content for c in chunks] == [BILLING_FAQ]
        stats = await ingestion_service.get_corpus_stats("support-bot")
        assert stats.total_sources == 1
        assert stats.total_embeddings == 1

    @pytest.mark.asyncio
    async def test_reingest_by_other_agent_rejected(
        self, ingestion_service: IngestionService
    ) -> None:
        await ingestion_service.ingest(text_request(PASSWORD_FAQ, source_id="faq-1"))

        with pytest.raises(ValidationError, match="another agent"):
            await ingestion_service.ingest(
                text_request(BILLING_FAQ, agent_id="docs-bot", source_id="faq-1")
            )

    @pytest.mark.asyncio
    async def test_empty_content_rejected_before_any_write(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await ingestion_service.ingest(IngestRequest(agent_id=" ", content="  \n "))

        assert exc_info.value.errors == ["agent_id: must not be empty", "content: must not be empty"]
        assert (await memory_store.get_stats(" ")).total_sources == 0

    @pytest.mark.asyncio
    async def test_embedding_failure_marks_source_and_job_failed(
        self, memory_store: MemoryKnowledgeStore
    ) -> None:
        service = _service(memory_store, MockEmbeddingProvider(fail_always=True))

        with pytest.raises(IngestionPhaseError) as exc_info:
            await service.ingest(text_request(PASSWORD_FAQ, source_id="faq-1"))

        error = exc_info.value
        assert error.phase == "embedding"
        assert error.provider_name == "mock-embedding"
        source = await memory_store.get_source("faq-1")
        assert source is not None
        assert source.status == SourceStatus.FAILED
        assert source.error == "embedding: embedding backend down"
        # chunks from earlier phases stay for a retry
        assert len(await memory_store.get_chunks("faq-1")) == 1

        job = await service.get_job(error.job_id)
        assert job is not None
        assert job.status == JobStatus.FAILED
        assert job.failed_phase == "embedding"

    @pytest.mark.asyncio
    async def test_progress_updates_published(
        self, memory_store: MemoryKnowledgeStore, progress_tracker: ProgressTracker
    ) -> None:
        seen: list[TrainingJob] = []
        progress_tracker.register_listener(None, seen.append)
        service = _service(memory_store, MockEmbeddingProvider(), progress_tracker=progress_tracker)

        result = await service.ingest(text_request(PASSWORD_FAQ))

        assert [j.status for j in seen] == [
            JobStatus.IN_PROGRESS,
            JobStatus.IN_PROGRESS,
            JobStatus.COMPLETED,
        ]
        assert progress_tracker.get_status(result.job_id)["progress"] == 100.0


# ======================================================================
# ingest_many()
# ======================================================================


class TestIngestMany:
    @pytest.mark.asyncio
    async def test_empty_batch(self, ingestion_service: IngestionService) -> None:
        assert await ingestion_service.ingest_many([]) == []

    @pytest.mark.asyncio
    async def test_mixed_agents_rejected(self, ingestion_service: IngestionService) -> None:
        with pytest.raises(ValidationError, match="one agent"):
            await ingestion_service.ingest_many(
                [text_request(PASSWORD_FAQ), text_request(BILLING_FAQ, agent_id="docs-bot")]
            )

    @pytest.mark.asyncio
    async def test_all_sources_share_one_job(self, ingestion_service: IngestionService) -> None:
        results = await ingestion_service.ingest_many(
            [text_request(PASSWORD_FAQ), text_request(BILLING_FAQ), text_request(SHIPPING_FAQ)]
        )

        job_ids = {r.job_id for r in results}
        assert len(job_ids) == 1
        job = await ingestion_service.get_job(job_ids.pop())
        assert job is not None
        assert job.status == JobStatus.COMPLETED
        assert job.processed_sources == 3
        assert job.progress == 1.0

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_other_sources(
        self, memory_store: MemoryKnowledgeStore
    ) -> None:
        service = _service(memory_store, _WarehouseAllergicProvider(), max_concurrent_sources=2)

        results = await service.ingest_many(
            [text_request(PASSWORD_FAQ), text_request(SHIPPING_FAQ), text_request(BILLING_FAQ)]
        )

        assert isinstance(results[1], IngestionPhaseError)
        assert results[1].phase == "embedding"
        assert results[0].embeddings_created == 1
        assert results[2].embeddings_created == 1

        job = await service.get_job(results[0].job_id)
        assert job is not None
        assert job.status == JobStatus.FAILED
        assert job.processed_sources == 2
        assert job.error == "embedding: content rejected"


# ======================================================================
# remove_source() and stats
# ======================================================================


class TestRemoveSource:
    @pytest.mark.asyncio
    async def test_soft_delete_hides_source(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        result = await ingestion_service.ingest(text_request(PASSWORD_FAQ))

        assert await ingestion_service.remove_source(result.source_id) == 1

        source = await memory_store.get_source(result.source_id)
        assert source is not None and not source.is_active
        stats = await ingestion_service.get_corpus_stats("support-bot")
        assert (stats.total_sources, stats.active_sources) == (1, 0)

        # content of an inactive source no longer counts as known
        again = await ingestion_service.ingest(text_request(PASSWORD_FAQ))
        assert again.duplicate_chunks == 0

    @pytest.mark.asyncio
    async def test_purge_removes_everything(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        result = await ingestion_service.ingest(text_request(PASSWORD_FAQ))

        assert await ingestion_service.remove_source(result.source_id, purge=True) == 1

        assert await memory_store.get_source(result.source_id) is None
        assert await memory_store.get_chunks(result.source_id) == []
        stats = await ingestion_service.get_corpus_stats("support-bot")
        assert stats.total_embeddings == 0

    @pytest.mark.asyncio
    async def test_unknown_source(self, ingestion_service: IngestionService) -> None:
        assert await ingestion_service.remove_source("missing") == 0
        assert await ingestion_service.remove_source("missing", purge=True) == 0

    @pytest.mark.asyncio
    async def test_corpus_stats(self, ingestion_service: IngestionService) -> None:
        await ingestion_service.ingest(text_request(PASSWORD_FAQ))
        await ingestion_service.ingest(text_request(BILLING_FAQ))
        await ingestion_service.ingest(text_request(BILLING_FAQ))

        stats = await ingestion_service.get_corpus_stats("support-bot")

        assert stats.total_sources == 3
        assert stats.total_chunks == 3
        assert stats.duplicate_chunks == 1
        assert stats.total_embeddings == 2
        assert stats.sources_by_type == {"text": 3}


# ======================================================================
# Cached answers follow source changes
# ======================================================================


class TestCacheInvalidation:
    @pytest.mark.asyncio
    async def test_ingest_drops_agents_cached_answers(
        self, ingestion_service: IngestionService, response_cache: ResponseCache
    ) -> None:
        await response_cache.set("reset password", "support-bot", "old answer")
        await response_cache.set("reset password", "docs-bot", "other agent")

        await ingestion_service.ingest(text_request(PASSWORD_FAQ))

        assert await response_cache.get("reset password", "support-bot") is None
        assert await response_cache.get("reset password", "docs-bot") is not None

    @pytest.mark.asyncio
    async def test_batch_and_removal_drop_cached_answers(
        self, ingestion_service: IngestionService, response_cache: ResponseCache
    ) -> None:
        results = await ingestion_service.ingest_many([text_request(PASSWORD_FAQ)])
        await response_cache.set("reset password", "support-bot", "answer")

        await ingestion_service.remove_source(results[0].source_id)

        assert await response_cache.get("reset password", "support-bot") is None

    @pytest.mark.asyncio
    async def test_failed_ingest_still_invalidates(
        self, memory_store: MemoryKnowledgeStore, response_cache: ResponseCache
    ) -> None:
        service = _service(memory_store, MockEmbeddingProvider(fail_always=True), response_cache=response_cache)
        await response_cache.set("reset password", "support-bot", "answer")

        with pytest.raises(IngestionPhaseError):
            await service.ingest(text_request(PASSWORD_FAQ))

        assert await response_cache.get("reset password", "support-bot") is None


# ======================================================================
# Duplicates outliving their canonical chunk
# ======================================================================


class TestCanonicalHandover:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("purge", [False, True])
    async def test_removing_first_copy_promotes_duplicate(
        self,
        purge: bool,
        ingestion_service: IngestionService,
        query_engine: QueryEngine,
        memory_store: MemoryKnowledgeStore,
    ) -> None:
        await ingestion_service.ingest(text_request(BILLING_FAQ, source_id="a"))
        await ingestion_service.ingest(text_request(BILLING_FAQ, source_id="b"))

        await ingestion_service.remove_source("a", purge=purge)

        survivor = (await memory_store.get_chunks("b"))[0]
        assert not survivor.is_duplicate
        assert survivor.duplicate_of is None
        assert await memory_store.get_embedding(survivor.id, "mock-embed-v1") is not None
        bundle = await query_engine.retrieve(
            "When are invoices issued?", "support-bot", AgentRAGConfig(min_relevance_score=0.0)
        )
        assert [s.source_id for s in bundle.sources] == ["b"]

    @pytest.mark.asyncio
    async def test_other_copies_point_at_promoted_chunk(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        for source_id in ("a", "b", "c"):
            await ingestion_service.ingest(text_request(BILLING_FAQ, source_id=source_id))

        await ingestion_service.remove_source("a")

        promoted = (await memory_store.get_chunks("b"))[0]
        third = (await memory_store.get_chunks("c"))[0]
        assert not promoted.is_duplicate
        assert third.is_duplicate
        assert third.duplicate_of == promoted.id
        stats = await ingestion_service.get_corpus_stats("support-bot")
        assert stats.duplicate_chunks == 1

    @pytest.mark.asyncio
    async def test_reingesting_first_copy_promotes_duplicate(
        self,
        ingestion_service: IngestionService,
        query_engine: QueryEngine,
        memory_store: MemoryKnowledgeStore,
    ) -> None:
        await ingestion_service.ingest(text_request(BILLING_FAQ, source_id="a"))
        await ingestion_service.ingest(text_request(BILLING_FAQ, source_id="b"))

        await ingestion_service.ingest(text_request(PASSWORD_FAQ, source_id="a"))

        survivor = (await memory_store.get_chunks("b"))[0]
        assert not survivor.is_duplicate
        bundle = await query_engine.retrieve(
            "When are invoices issued?", "support-bot", AgentRAGConfig(min_relevance_score=0.0)
        )
        assert "b" in [s.source_id for s in bundle.sources]

    @pytest.mark.asyncio
    async def test_promotion_waits_for_backfill_when_embedding_fails(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        await ingestion_service.ingest(text_request(SHIPPING_FAQ, source_id="a"))
        await ingestion_service.ingest(text_request(SHIPPING_FAQ, source_id="b"))
        picky = _service(memory_store, _WarehouseAllergicProvider())

        # the promoted copy cannot be embedded, but the removal still succeeds
        assert await picky.remove_source("a") == 1

        survivor = (await memory_store.get_chunks("b"))[0]
        assert not survivor.is_duplicate
        assert await memory_store.find_unembedded_chunks("support-bot") == [survivor]

        assert await ingestion_service.backfill_embeddings("support-bot") == 1
        assert await memory_store.get_embedding(survivor.id, "mock-embed-v1") is not None
        assert await memory_store.find_unembedded_chunks("support-bot") == []


# ======================================================================
# Sources whose embedding phase failed
# ======================================================================


class TestFailedEmbedding:
    @pytest.mark.asyncio
    async def test_failed_source_is_not_searchable_or_canonical(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        picky = _service(memory_store, _WarehouseAllergicProvider())
        with pytest.raises(IngestionPhaseError):
            await picky.ingest(text_request(SHIPPING_FAQ, source_id="a"))

        hits = await memory_store.keyword_search(
            "support-bot", ["warehouse"], SearchFilters(min_similarity=0.0)
        )
        assert hits == []

        # the same content from a healthy run becomes the canonical copy
        result = await ingestion_service.ingest(text_request(SHIPPING_FAQ, source_id="b"))
        assert (result.unique_chunks, result.embeddings_created) == (1, 1)

    @pytest.mark.asyncio
    async def test_backfill_resumes_failed_source(
        self,
        ingestion_service: IngestionService,
        query_engine: QueryEngine,
        memory_store: MemoryKnowledgeStore,
    ) -> None:
        picky = _service(memory_store, _WarehouseAllergicProvider())
        with pytest.raises(IngestionPhaseError):
            await picky.ingest(text_request(SHIPPING_FAQ, source_id="a"))

        written = await ingestion_service.backfill_embeddings("support-bot")

        assert written == 1
        source = await memory_store.get_source("a")
        assert source is not None
        assert source.status == SourceStatus.COMPLETED
        assert source.error is None
        bundle = await query_engine.retrieve(
            "When does the warehouse ship orders?",
            "support-bot",
            AgentRAGConfig(min_relevance_score=0.0),
        )
        assert [s.source_id for s in bundle.sources] == ["a"]
        assert await ingestion_service.backfill_embeddings("support-bot") == 0

    @pytest.mark.asyncio
    async def test_backfill_defers_to_copy_ingested_meanwhile(
        self, ingestion_service: IngestionService, memory_store: MemoryKnowledgeStore
    ) -> None:
        picky = _service(memory_store, _WarehouseAllergicProvider())
        with pytest.raises(IngestionPhaseError):
            await picky.ingest(text_request(SHIPPING_FAQ, source_id="a"))
        await ingestion_service.ingest(text_request(SHIPPING_FAQ, source_id="b"))

        assert await ingestion_service.backfill_embeddings("support-bot") == 0

        stale = (await memory_store.get_chunks("a"))[0]
        fresh = (await memory_store.get_chunks("b"))[0]
        assert stale.is_duplicate
        assert stale.duplicate_of == fresh.id
        source = await memory_store.get_source("a")
        assert source is not None and source.status == SourceStatus.COMPLETED
