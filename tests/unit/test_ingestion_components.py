"""Unit tests for the ingestion building blocks.

Covers the compression engine, the semantic chunker, the deduplication
engine and the HTML content extractor.  The end-to-end ingestion service
is tested separately in test_ingestion_service.py.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from src.models.rag import Chunk, Complexity, ContentStructure
from src.models.source import Source
from src.providers.store.memory_store import MemoryKnowledgeStore
from src.services.ingestion.chunker import ChunkingOptions, SemanticChunker
from src.services.ingestion.compression import (
    CompressionEngine,
    CompressionStrategy,
    ContentAnalysis,
    ContentType,
    ProcessingMode,
    RunLengthStrategy,
)
from src.services.ingestion.content_extractor import ContentExtractor
from src.services.ingestion.deduplication import DeduplicationEngine
from src.utils.text_normalizer import split_sentences
from tests.conftest import PASSWORD_FAQ


def _analysis(content_type: ContentType, boilerplate_ratio: float = 0.0) -> ContentAnalysis:
    return ContentAnalysis(
        content_type=content_type,
        density=0.6,
        boilerplate_ratio=boilerplate_ratio,
        unique_word_ratio=0.6,
        word_count=400,
        sentence_count=20,
    )


class _BrokenStrategy(CompressionStrategy):
    name = "broken"

    def compress(self, data: bytes) -> bytes:
        raise RuntimeError("codec crashed")

    def decompress(self, data: bytes) -> bytes:
        raise RuntimeError("codec crashed")


def _numbered_paragraphs(count: int) -> str:
    return "\n\n".join(
        f"Paragraph {i} explains topic {i} in plain words. It covers the setup steps "
        f"for item {i}. Each step for item {i} is short and clear."
        for i in range(1, count + 1)
    )


# ======================================================================
# CompressionEngine -- analysis and mode selection
# ======================================================================


class TestProcessingMode:
    def test_small_content_is_summarized(self) -> None:
        mode = CompressionEngine.select_processing_mode(_analysis(ContentType.TEMPLATE, 0.9), 1999)
        assert mode == ProcessingMode.SUMMARY

    def test_informational_content_summarized_below_3000(self) -> None:
        analysis = _analysis(ContentType.INFORMATIONAL)
        assert CompressionEngine.select_processing_mode(analysis, 2500) == ProcessingMode.SUMMARY
        assert CompressionEngine.select_processing_mode(analysis, 3500) == ProcessingMode.CHUNKING

    def test_boilerplate_heavy_content_has_template_removed(self) -> None:
        analysis = _analysis(ContentType.TEMPLATE, boilerplate_ratio=0.5)
        assert CompressionEngine.select_processing_mode(analysis, 5000) == ProcessingMode.TEMPLATE_REMOVAL

    def test_content_rich_is_chunked(self) -> None:
        analysis = _analysis(ContentType.CONTENT_RICH, boilerplate_ratio=0.3)
        assert CompressionEngine.select_processing_mode(analysis, 5000) == ProcessingMode.CHUNKING

    def test_analyze_flags_repeated_sentences_as_template(self) -> None:
        text = "Buy now today. Buy now today. Buy now today. Our widget is blue."
        analysis = CompressionEngine().analyze(text)
        assert analysis.content_type == ContentType.TEMPLATE
        assert analysis.boilerplate_ratio == 0.5
        assert analysis.sentence_count == 4

    def test_analyze_short_unique_text_is_informational(self) -> None:
        analysis = CompressionEngine().analyze(PASSWORD_FAQ)
        assert analysis.content_type == ContentType.INFORMATIONAL
        assert analysis.boilerplate_ratio == 0.0

    def test_analyze_empty_text(self) -> None:
        analysis = CompressionEngine().analyze("")
        assert analysis.word_count == 0
        assert analysis.sentence_count == 0

    def test_remove_template_keeps_first_occurrence_and_paragraphs(self) -> None:
        text = (
            "Great product details here. Copyright 2024 Acme. Great product details here."
            "\n\nSecond paragraph stays."
        )
        assert CompressionEngine.remove_template(text) == (
            "Great product details here.\n\nSecond paragraph stays."
        )


# ======================================================================
# CompressionEngine -- strategy cascade
# ======================================================================


class TestCompressionCascade:
    def test_repetitive_text_uses_dictionary_deflate(self) -> None:
        engine = CompressionEngine()
        text = "Reset your password from the settings page. " * 50

        result = engine.compress(text)

        assert result.method == "deflate-dict"
        assert result.attempts == ["deflate-dict:ok"]
        assert result.compressed_size < result.original_size
        assert result.ratio < 1.0
        assert engine.decompress_text(result) == text

    def test_failing_strategy_falls_through(self) -> None:
        engine = CompressionEngine(strategies=[_BrokenStrategy(), RunLengthStrategy()])
        data = b"a" * 40 + b"tail"

        result = engine.compress(data)

        assert result.method == "rle"
        assert result.attempts == ["broken:error", "rle:ok"]
        assert engine.decompress(result.compressed, "rle") == data

    def test_no_gain_stores_as_is(self) -> None:
        engine = CompressionEngine(strategies=[RunLengthStrategy()])

        result = engine.compress(b"abc")

        assert result.method == "none"
        assert result.ratio == 1.0
        assert result.compressed == b"abc"
        assert result.attempts == ["rle:no_gain", "none:ok"]

    def test_empty_input_is_stored_as_is(self) -> None:
        result = CompressionEngine().compress(b"")
        assert result.method == "none"
        assert result.original_size == 0
        assert result.compressed == b""

    def test_strategy_names_always_end_with_passthrough(self) -> None:
        assert CompressionEngine().strategy_names == ["deflate-dict", "rle", "none"]

    def test_unknown_method_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown compression method"):
            CompressionEngine().decompress(b"data", "lz4")


class TestRunLengthStrategy:
    def test_escape_byte_and_runs_survive(self) -> None:
        strategy = RunLengthStrategy()
        data = b"\xfe" + b"a" * 10 + b"xyz"

        encoded = strategy.compress(data)

        assert encoded == bytes((0xFE, 0xFE, 1, 0xFE, ord("a"), 10)) + b"xyz"
        assert strategy.decompress(encoded) == data

    def test_long_runs_split_at_255(self) -> None:
        strategy = RunLengthStrategy()
        data = b"z" * 300
        assert strategy.decompress(strategy.compress(data)) == data

    def test_truncated_sequence_rejected(self) -> None:
        with pytest.raises(ValueError, match="truncated"):
            RunLengthStrategy().decompress(bytes((0xFE, 0x41)))


# ======================================================================
# SemanticChunker
# ======================================================================


class TestChunkingOptions:
    def test_defaults(self) -> None:
        options = ChunkingOptions()
        assert (options.target_size, options.max_size, options.min_size, options.overlap_size) == (
            500,
            750,
            100,
            50,
        )

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"target_size": 800, "max_size": 750},
            {"min_size": 600},
            {"overlap_size": 500},
        ],
    )
    def test_inconsistent_sizes_rejected(self, kwargs: dict[str, int]) -> None:
        with pytest.raises(PydanticValidationError):
            ChunkingOptions(**kwargs)


class TestClassification:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("def handler(event):\n    return event\n", ContentStructure.CODE),
            ("- first item\n- second item\n- third item", ContentStructure.LIST),
            ("| name | value |\n|---|---|\n| a | 1 |", ContentStructure.TABLE),
            ("# Setup\nInstall the package first.", ContentStructure.HEADING),
            ("Plain prose without any structure.", ContentStructure.PARAGRAPH),
            ("", ContentStructure.PARAGRAPH),
        ],
    )
    def test_classify_structure(self, text: str, expected: ContentStructure) -> None:
        assert SemanticChunker.classify_structure(text) == expected

    def test_classify_complexity(self) -> None:
        assert SemanticChunker.classify_complexity("Short one. Another short.") == Complexity.SIMPLE
        long_sentence = " ".join(["word"] * 30) + "."
        assert SemanticChunker.classify_complexity(long_sentence) == Complexity.COMPLEX

    def test_adjust_sizes(self) -> None:
        options = ChunkingOptions()
        assert SemanticChunker.adjust_sizes(options, ContentStructure.PARAGRAPH, Complexity.MEDIUM) == (500, 750)
        assert SemanticChunker.adjust_sizes(options, ContentStructure.PARAGRAPH, Complexity.COMPLEX) == (350, 525)
        assert SemanticChunker.adjust_sizes(options, ContentStructure.TABLE, Complexity.MEDIUM) == (750, 1125)
        static = ChunkingOptions(dynamic_sizing=False)
        assert SemanticChunker.adjust_sizes(static, ContentStructure.CODE, Complexity.COMPLEX) == (500, 750)

    def test_quality_score(self) -> None:
        assert SemanticChunker.quality_score("") == 0.0
        assert SemanticChunker.quality_score(PASSWORD_FAQ) > 0.8
        assert SemanticChunker.quality_score("@@@@ #### $$$$ %%%%") < 0.3


class TestCreateChunks:
    @pytest.fixture()
    def chunker(self) -> SemanticChunker:
        return SemanticChunker(
            ChunkingOptions(
                target_size=80,
                max_size=120,
                min_size=10,
                overlap_size=15,
                dynamic_sizing=False,
                min_chars=20,
            )
        )

    def test_empty_text(self, chunker: SemanticChunker) -> None:
        assert chunker.create_chunks("") == []
        assert chunker.create_chunks("   \n\n ") == []

    def test_short_single_chunk_kept_below_min_size(self) -> None:
        chunks = SemanticChunker().create_chunks(PASSWORD_FAQ)
        assert len(chunks) == 1
        assert chunks[0].index == 0
        assert chunks[0].content == PASSWORD_FAQ
        assert "password" in chunks[0].metadata.keywords

    def test_tiny_text_rejected(self) -> None:
        assert SemanticChunker().create_chunks("Too short.") == []

    def test_chunks_are_contiguous_and_bounded(self, chunker: SemanticChunker) -> None:
        chunks = chunker.create_chunks(_numbered_paragraphs(10))

        assert len(chunks) > 1
        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert all(c.token_count <= 120 for c in chunks)
        joined = "\n".join(c.content for c in chunks)
        for i in range(1, 11):
            assert f"Paragraph {i} explains" in joined

    def test_prose_chunks_overlap(self, chunker: SemanticChunker) -> None:
        chunks = chunker.create_chunks(_numbered_paragraphs(10))

        for previous, current in zip(chunks, chunks[1:]):
            last_sentence = split_sentences(previous.content)[-1]
            assert current.content.startswith(last_sentence)

    def test_table_chunks_repeat_header(self) -> None:
        header = "| name | value |\n|---|---|"
        rows = "\n".join(f"| item {i} | value {i} |" for i in range(40))
        chunker = SemanticChunker(
            ChunkingOptions(target_size=50, max_size=80, min_size=10, overlap_size=5, dynamic_sizing=False)
        )

        chunks = chunker.create_chunks(f"{header}\n{rows}")

        assert len(chunks) > 1
        assert all(c.content.startswith("| name | value |") for c in chunks)

    def test_heading_recorded_in_metadata(self) -> None:
        text = "# Password help\n" + PASSWORD_FAQ
        chunks = SemanticChunker().create_chunks(text)
        assert chunks[0].metadata.heading == "Password help"


# ======================================================================
# DeduplicationEngine
# ======================================================================


class TestDeduplicationEngine:
    @pytest.fixture()
    def engine(self, memory_store: MemoryKnowledgeStore) -> DeduplicationEngine:
        return DeduplicationEngine(memory_store)

    def test_hash_ignores_case_and_whitespace(self) -> None:
        assert DeduplicationEngine.chunk_hash("Hello   World") == DeduplicationEngine.chunk_hash(" hello world\n")
        assert DeduplicationEngine.chunk_hash("hello") != DeduplicationEngine.chunk_hash("hello!")
        assert len(DeduplicationEngine.chunk_hash("x")) == 64

    def test_dedupe_sentences_across_paragraphs(self, engine: DeduplicationEngine) -> None:
        text = "Reset from settings. Links expire quickly. Reset from settings.\n\nReset from settings. Check spam."
        deduped, removed = engine.dedupe_sentences_counted(text)
        assert deduped == "Reset from settings. Links expire quickly.\n\nCheck spam."
        assert removed == 2

    def test_apply_sentence_dedup_refreshes_hash(self, engine: DeduplicationEngine) -> None:
        chunk = Chunk(source_id="s1", agent_id="a1", chunk_index=0, content="Same line. Same line.")

        updated, removed = engine.apply_sentence_dedup(chunk)

        assert removed == 1
        assert updated.content == "Same line."
        assert updated.content_hash == DeduplicationEngine.chunk_hash("Same line.")
        assert updated.token_count == 3

    def test_apply_sentence_dedup_sets_missing_hash(self, engine: DeduplicationEngine) -> None:
        chunk = Chunk(source_id="s1", agent_id="a1", chunk_index=0, content="Unique line.")
        updated, removed = engine.apply_sentence_dedup(chunk)
        assert removed == 0
        assert updated.content_hash == DeduplicationEngine.chunk_hash("Unique line.")

    @pytest.mark.asyncio
    async def test_duplicates_within_batch(self, engine: DeduplicationEngine) -> None:
        first = Chunk(source_id="s1", agent_id="a1", chunk_index=0, content="Refunds go to the card.")
        second = Chunk(source_id="s1", agent_id="a1", chunk_index=1, content="REFUNDS go to the   card.")

        result = await engine.deduplicate_batch([first, second], "a1")

        assert [c.id for c in result.unique] == [first.id]
        assert result.duplicates[0].duplicate_of == first.id
        assert result.duplicates[0].is_duplicate is True
        assert result.stats.deduplication_rate == 0.5
        assert result.stats.space_saved == len(second.content)
        assert [c.chunk_index for c in result.all_chunks] == [0, 1]

    @pytest.mark.asyncio
    async def test_stored_canonical_detected_per_agent(
        self, engine: DeduplicationEngine, memory_store: MemoryKnowledgeStore
    ) -> None:
        for source_id, agent_id in (("s1", "a1"), ("s2", "a1"), ("s3", "a2")):
            await memory_store.save_source(Source(id=source_id, agent_id=agent_id))
        canonical = Chunk(source_id="s1", agent_id="a1", chunk_index=0, content="Ships in two days.")
        await engine.deduplicate_and_store([canonical], "a1")

        same_agent = Chunk(source_id="s2", agent_id="a1", chunk_index=0, content="Ships in two days.")
        other_agent = Chunk(source_id="s3", agent_id="a2", chunk_index=0, content="Ships in two days.")
        first = await engine.deduplicate_and_store([same_agent], "a1")
        second = await engine.deduplicate_and_store([other_agent], "a2")

        assert first.duplicates[0].duplicate_of == canonical.id
        assert second.stats.duplicate_count == 0
        assert len(await memory_store.get_chunks("s2")) == 1
        assert await engine.is_duplicate(DeduplicationEngine.chunk_hash("ships in two days."), "a1")

    @pytest.mark.asyncio
    async def test_reprocessing_same_chunk_is_not_its_own_duplicate(
        self, engine: DeduplicationEngine, memory_store: MemoryKnowledgeStore
    ) -> None:
        await memory_store.save_source(Source(id="s1", agent_id="a1"))
        chunk = Chunk(source_id="s1", agent_id="a1", chunk_index=0, content="Stable text.")
        await engine.deduplicate_and_store([chunk], "a1")

        again = await engine.deduplicate_batch([chunk], "a1")

        assert again.stats.unique_count == 1


# ======================================================================
# ContentExtractor
# ======================================================================

ARTICLE_BODY = (
    "Resetting a password takes a minute. Open the account settings page, choose "
    "Reset password and follow the emailed link before it expires."
)


class TestContentExtractor:
    @pytest.fixture()
    def extractor(self) -> ContentExtractor:
        # region search only; trafilatura gets its own tests below
        return ContentExtractor(use_trafilatura=False)

    def test_empty_markup_uses_host_as_title(self, extractor: ContentExtractor) -> None:
        result = extractor.extract("   ", url="https://help.example.com/reset")
        assert result.title == "help.example.com"
        assert result.content == ""
        assert result.method == "empty"

    def test_landmark_region_without_chrome(self, extractor: ContentExtractor) -> None:
        html = f"""
        <html><head><title>Password help</title><script>var x = 1;</script></head>
        <body>
          <nav>Home | Pricing | Login</nav>
          <main><h1>Reset</h1><p>{ARTICLE_BODY}</p></main>
          <footer>Copyright 2024 Example</footer>
        </body></html>
        """

        result = extractor.extract(html)

        assert result.method == "landmark"
        assert result.title == "Password help"
        assert ARTICLE_BODY in result.content
        assert "Pricing" not in result.content
        assert "Copyright" not in result.content
        assert "var x" not in result.content
        assert result.length == len(result.content)

    def test_densest_container_when_no_landmark(self, extractor: ContentExtractor) -> None:
        html = f"""
        <html><body>
          <div class="wrapper">
            <div id="post"><p>{ARTICLE_BODY}</p><p>{ARTICLE_BODY}</p></div>
            <div class="sidebar"><p>Related links and promotions for other products.</p></div>
          </div>
        </body></html>
        """

        result = extractor.extract(html)

        assert result.method == "density"
        assert ARTICLE_BODY in result.content
        assert "promotions" not in result.content

    def test_lists_keep_their_markers(self, extractor: ContentExtractor) -> None:
        html = f"<article><p>{ARTICLE_BODY}</p><ul><li>Open settings</li><li>Choose reset</li></ul></article>"
        result = extractor.extract(html)
        assert "- Open settings" in result.content
        assert "- Choose reset" in result.content

    def test_title_falls_back_to_heading(self, extractor: ContentExtractor) -> None:
        result = extractor.extract(f"<body><h1>Billing</h1><p>{ARTICLE_BODY}</p></body>")
        assert result.title == "Billing"

    def test_trafilatura_extracts_main_text(self) -> None:
        html = f"""
        <html><head><title>Password help</title></head>
        <body>
          <nav><a href="/">Home</a> | <a href="/pricing">Pricing</a></nav>
          <article>
            <p>{ARTICLE_BODY}</p>
            <p>{PASSWORD_FAQ}</p>
            <p>Administrators can also force a reset for any member from the team
            directory, which signs that member out of every active session at once.</p>
          </article>
          <footer>Copyright 2024 Example</footer>
        </body></html>
        """

        result = ContentExtractor().extract(html)

        assert result.method == "trafilatura"
        assert result.title == "Password help"
        assert ARTICLE_BODY in result.content
        assert "\n\n" in result.content
        assert "Copyright" not in result.content

    def test_short_trafilatura_output_falls_back_to_region_search(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("trafilatura.extract", lambda *args, **kwargs: "Reset")
        html = f"<html><body><nav>Menu</nav><main><p>{ARTICLE_BODY}</p></main></body></html>"

        result = ContentExtractor().extract(html)

        assert result.method == "landmark"
        assert ARTICLE_BODY in result.content

    def test_trafilatura_error_falls_back_to_region_search(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def _broken(*args: object, **kwargs: object) -> str:
            raise RuntimeError("parser exploded")

        monkeypatch.setattr("trafilatura.extract", _broken)
        html = f"<html><body><main><p>{ARTICLE_BODY}</p></main></body></html>"

        result = ContentExtractor().extract(html)

        assert result.method == "landmark"

    def test_looks_like_markup(self) -> None:
        assert ContentExtractor.looks_like_markup("<div>hello</div>")
        assert not ContentExtractor.looks_like_markup("Plain text with a < sign")
