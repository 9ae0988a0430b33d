"""Unit tests for LLM routing, streaming and answer post-processing."""

from __future__ import annotations

import asyncio

import pytest

from src.models.agent_config import ResponseSettings
from src.models.llm import GenerationOptions, StreamEvent, StreamEventType
from src.models.query import CitedSource
from src.models.usage import UsageOperation
from src.providers.store.memory_store import MemoryKnowledgeStore
from src.services.llm import (
    CancellationToken,
    LLMRouter,
    ResponsePostProcessor,
    StreamSafetyFilter,
    StreamingHandler,
    build_rag_prompt,
)
from src.services.llm.llm_router import DEFAULT_SYSTEM_PROMPT, NO_CONTEXT
from src.services.llm.post_processor import REDACTION_NOTICE, SafetyFlagType
from src.services.usage_tracker import UsageTracker
from src.utils.errors import ConfigurationError, LLMError
from src.utils.text_normalizer import estimate_tokens
from tests.conftest import MockLLMProvider


class _NoChatProvider(MockLLMProvider):
    def supports_chat(self) -> bool:
        return False


async def _collect(events) -> list[StreamEvent]:
    return [event async for event in events]


# ======================================================================
# Prompt assembly
# ======================================================================


class TestBuildRagPrompt:
    def test_numbers_context_blocks(self) -> None:
        prompt = build_rag_prompt("How do I reset?", ["First block", "Second block"])
        assert "Context 1:\nFirst block\n\nContext 2:\nSecond block" in prompt
        assert prompt.endswith("Question: How do I reset?\n")
        assert NO_CONTEXT not in prompt

    def test_empty_context_says_so(self) -> None:
        prompt = build_rag_prompt("How do I reset?", [])
        assert NO_CONTEXT in prompt
        assert "Context 1:" not in prompt


# ======================================================================
# LLMRouter
# ======================================================================


class TestLLMRouter:
    @pytest.fixture()
    def secondary(self) -> MockLLMProvider:
        return MockLLMProvider(reply="From the secondary provider.", name="secondary", model="second-v1")

    @pytest.fixture()
    def router(
        self,
        mock_llm_provider: MockLLMProvider,
        secondary: MockLLMProvider,
        usage_tracker: UsageTracker,
    ) -> LLMRouter:
        return LLMRouter(
            {
                "mock-llm": mock_llm_provider,
                "secondary": secondary,
                "offline": MockLLMProvider(name="offline", available=False),
                "embed-only": _NoChatProvider(name="embed-only"),
            },
            default_provider="mock-llm",
            usage_tracker=usage_tracker,
        )

    def test_unknown_default_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            LLMRouter({"a": MockLLMProvider()}, default_provider="b")

    @pytest.mark.parametrize(
        ("requested", "expected"),
        [
            (None, "mock-llm"),
            ("secondary", "secondary"),
            ("missing", "mock-llm"),
            ("offline", "mock-llm"),
            ("embed-only", "mock-llm"),
        ],
    )
    def test_resolve(self, router: LLMRouter, requested: str | None, expected: str) -> None:
        assert router.resolve(requested).get_provider_name() == expected

    @pytest.mark.asyncio
    async def test_route_builds_prompt_and_records_usage(
        self,
        router: LLMRouter,
        mock_llm_provider: MockLLMProvider,
        memory_store: MemoryKnowledgeStore,
    ) -> None:
        completion = await router.route(
            "How do I reset?",
            ["Use the settings page."],
            options=GenerationOptions(temperature=0.2, max_tokens=300, agent_id="support-bot"),
        )

        assert completion.content == mock_llm_provider.reply
        call = mock_llm_provider.complete_calls[0]
        assert call["system_prompt"] == DEFAULT_SYSTEM_PROMPT
        assert "Context 1:\nUse the settings page." in call["user_prompt"]
        assert (call["temperature"], call["max_tokens"]) == (0.2, 300)

        records = await memory_store.list_usage("support-bot")
        assert len(records) == 1
        assert records[0].operation == UsageOperation.CHAT
        assert records[0].provider == "mock-llm"
        assert records[0].output_tokens == 12

    @pytest.mark.asyncio
    async def test_custom_system_prompt(self, router: LLMRouter, mock_llm_provider: MockLLMProvider) -> None:
        await router.route("q", options=GenerationOptions(system_prompt="Be terse."))
        assert mock_llm_provider.complete_calls[0]["system_prompt"] == "Be terse."

    @pytest.mark.asyncio
    async def test_model_override_kept_for_requested_provider(
        self, router: LLMRouter, secondary: MockLLMProvider
    ) -> None:
        completion = await router.route("q", provider="secondary", options=GenerationOptions(model="second-large"))
        assert secondary.complete_calls[0]["model"] == "second-large"
        assert completion.model == "second-large"

    @pytest.mark.asyncio
    async def test_model_override_dropped_on_fallback(
        self, router: LLMRouter, mock_llm_provider: MockLLMProvider
    ) -> None:
        completion = await router.route("q", provider="offline", options=GenerationOptions(model="offline-xl"))
        assert mock_llm_provider.complete_calls[0]["model"] is None
        assert completion.model == "mock-chat-v1"

    @pytest.mark.asyncio
    async def test_timeout_is_transient_llm_error(self, usage_tracker: UsageTracker) -> None:
        slow = MockLLMProvider(delay=0.5)
        router = LLMRouter({"slow": slow}, default_provider="slow", usage_tracker=usage_tracker)

        with pytest.raises(LLMError) as exc_info:
            await router.route("q", options=GenerationOptions(timeout_seconds=0.05))

        assert exc_info.value.transient is True
        assert exc_info.value.provider_name == "mock-llm"

    @pytest.mark.asyncio
    async def test_provider_error_propagates_without_usage(
        self, usage_tracker: UsageTracker, memory_store: MemoryKnowledgeStore
    ) -> None:
        broken = MockLLMProvider(error=LLMError("invalid api key", provider_name="mock-llm"))
        router = LLMRouter({"broken": broken}, default_provider="broken", usage_tracker=usage_tracker)

        with pytest.raises(LLMError, match="invalid api key"):
            await router.route("q")

        assert await memory_store.list_usage() == []


# ======================================================================
# StreamingHandler
# ======================================================================


class TestStreamingHandler:
    @pytest.fixture()
    def handler(self, llm_router: LLMRouter) -> StreamingHandler:
        return StreamingHandler(llm_router)

    @pytest.mark.asyncio
    async def test_deltas_then_one_complete(
        self, handler: StreamingHandler, mock_llm_provider: MockLLMProvider
    ) -> None:
        sources = [CitedSource(id="s1", name="Password FAQ", relevance=0.8)]
        events = await _collect(handler.stream("How do I reset?", ["ctx"], sources=sources))

        deltas = [e for e in events if e.type == StreamEventType.DELTA]
        completes = [e for e in events if e.type == StreamEventType.COMPLETE]
        assert [d.index for d in deltas] == list(range(len(deltas)))
        assert "".join(d.text for d in deltas) == mock_llm_provider.reply
        assert len(completes) == 1
        assert events[-1] is completes[0]
        assert completes[0].index == len(deltas)
        assert completes[0].usage is not None and completes[0].usage.estimated is False
        assert completes[0].sources == sources
        assert completes[0].cancelled is False
        assert mock_llm_provider.stream_closed is True

    @pytest.mark.asyncio
    async def test_cancellation_stops_deltas_and_closes_provider(
        self,
        handler: StreamingHandler,
        mock_llm_provider: MockLLMProvider,
        memory_store: MemoryKnowledgeStore,
    ) -> None:
        token = CancellationToken()
        events: list[StreamEvent] = []
        async for event in handler.stream(
            "How do I reset?", options=GenerationOptions(agent_id="support-bot"), token=token
        ):
            events.append(event)
            if event.type == StreamEventType.DELTA:
                token.cancel()

        assert [e.type for e in events] == [StreamEventType.DELTA, StreamEventType.COMPLETE]
        assert events[-1].cancelled is True
        assert events[-1].usage is not None and events[-1].usage.estimated is True
        assert mock_llm_provider.stream_closed is True
        assert len(await memory_store.list_usage("support-bot")) == 1

    @pytest.mark.asyncio
    async def test_cancel_interrupts_a_waiting_provider_read(self, usage_tracker: UsageTracker) -> None:
        slow = MockLLMProvider(delay=3.0)
        handler = StreamingHandler(LLMRouter({"slow": slow}, default_provider="slow", usage_tracker=usage_tracker))
        token = CancellationToken()

        async def _cancel_soon() -> None:
            await asyncio.sleep(0.1)
            token.cancel()

        canceller = asyncio.create_task(_cancel_soon())
        loop = asyncio.get_running_loop()
        started = loop.time()
        events = await _collect(handler.stream("q", token=token))
        elapsed = loop.time() - started
        await canceller

        assert elapsed < 1.0
        assert [e.type for e in events] == [StreamEventType.COMPLETE]
        assert events[0].cancelled is True
        assert events[0].error is None
        assert slow.stream_closed is True

    @pytest.mark.asyncio
    async def test_cancelled_before_start(
        self, handler: StreamingHandler, mock_llm_provider: MockLLMProvider
    ) -> None:
        token = CancellationToken()
        token.cancel()

        events = await _collect(handler.stream("q", token=token))

        assert [e.type for e in events] == [StreamEventType.COMPLETE]
        assert events[0].cancelled is True

    @pytest.mark.asyncio
    async def test_timeout_emits_error_then_complete(self, usage_tracker: UsageTracker) -> None:
        slow = MockLLMProvider(delay=0.5)
        handler = StreamingHandler(LLMRouter({"slow": slow}, default_provider="slow", usage_tracker=usage_tracker))

        events = await _collect(handler.stream("q", options=GenerationOptions(timeout_seconds=0.05)))

        assert [e.type for e in events] == [StreamEventType.ERROR, StreamEventType.COMPLETE]
        assert "timed out" in (events[0].error or "")
        assert events[1].error == events[0].error
        assert slow.stream_closed is True

    @pytest.mark.asyncio
    async def test_provider_error_mid_stream(self, usage_tracker: UsageTracker) -> None:
        broken = MockLLMProvider(error=LLMError("connection reset", transient=True))
        handler = StreamingHandler(LLMRouter({"b": broken}, default_provider="b", usage_tracker=usage_tracker))

        events = await _collect(handler.stream("q"))

        assert [e.type for e in events] == [StreamEventType.ERROR, StreamEventType.COMPLETE]
        assert events[0].error == "connection reset"

    @pytest.mark.asyncio
    async def test_non_streaming_provider_is_adapted(self, usage_tracker: UsageTracker) -> None:
        plain = MockLLMProvider(streaming=False)
        handler = StreamingHandler(LLMRouter({"plain": plain}, default_provider="plain", usage_tracker=usage_tracker))

        events = await _collect(handler.stream("q"))

        assert [e.type for e in events] == [StreamEventType.DELTA, StreamEventType.COMPLETE]
        assert events[0].text == plain.reply
        assert events[1].usage is not None and events[1].usage.output_tokens == 12
        assert plain.stream_calls == []

    @pytest.mark.asyncio
    async def test_usage_estimated_when_not_reported(self, usage_tracker: UsageTracker) -> None:
        quiet = MockLLMProvider(report_usage=False)
        handler = StreamingHandler(LLMRouter({"q": quiet}, default_provider="q", usage_tracker=usage_tracker))

        events = await _collect(handler.stream("q"))

        usage = events[-1].usage
        assert usage is not None
        assert usage.estimated is True
        assert usage.output_tokens == estimate_tokens(quiet.reply)
        assert usage.input_tokens > 0


# ======================================================================
# ResponsePostProcessor
# ======================================================================


class TestResponsePostProcessor:
    @pytest.fixture()
    def processor(self) -> ResponsePostProcessor:
        return ResponsePostProcessor()

    def test_citations_list_each_source_once(self) -> None:
        sources = [
            CitedSource(id="s1", name="Password FAQ"),
            CitedSource(id="s1", name="Password FAQ"),
            CitedSource(id="s2", name="Billing FAQ"),
        ]
        text = ResponsePostProcessor.add_citations("Answer.  \n", sources)
        assert text == "Answer.\n\n**Sources:**\n1. Password FAQ\n2. Billing FAQ"

    def test_unnamed_sources_add_nothing(self) -> None:
        assert ResponsePostProcessor.add_citations("Answer.", [CitedSource(id="s1", name="")]) == "Answer."

    def test_format_markdown(self) -> None:
        raw = "#Title\n*item one\n-item two\n\n\n\nClosing line.\n"
        assert ResponsePostProcessor.format_markdown(raw) == "# Title\n* item one\n- item two\n\nClosing line."

    def test_harmful_terms_redacted(self) -> None:
        text, flags = ResponsePostProcessor.apply_safety("That is dangerous advice.")
        assert "dangerous" not in text
        assert text.count(REDACTION_NOTICE) == 1
        assert flags[0].type == SafetyFlagType.HARMFUL
        assert flags[0].matches == 1

    def test_bias_only_flagged(self) -> None:
        original = "Avoid biased or discriminatory language."
        text, flags = ResponsePostProcessor.apply_safety(original)
        assert text == original
        assert [f.type for f in flags] == [SafetyFlagType.BIAS]
        assert flags[0].matches == 2

    def test_process_with_defaults(self, processor: ResponsePostProcessor) -> None:
        result = processor.process(
            "Harmful content stays when the filter is off.",
            [CitedSource(id="s1", name="Password FAQ")],
        )
        assert result.content.startswith("Harmful content stays")
        assert result.content.endswith("1. Password FAQ")
        assert len(result.citations) == 1
        assert result.redacted is False
        assert result.original_length == len("Harmful content stays when the filter is off.")

    def test_process_with_every_setting(self, processor: ResponsePostProcessor) -> None:
        settings = ResponseSettings(
            include_sources=False, format_markdown=True, safety_filter=True, add_timestamp=True
        )

        result = processor.process("This is harmful.", [CitedSource(id="s1", name="FAQ")], settings)

        assert result.redacted is True
        assert result.citations == []
        assert "**Sources:**" not in result.content
        assert "*Response generated at " in result.content


class TestStreamSafetyFilter:
    def test_term_split_across_deltas_is_redacted(self) -> None:
        screen = StreamSafetyFilter()

        pieces = [screen.feed(d) for d in ["That is dan", "gerous adv", "ice."]]
        pieces.append(screen.flush())

        assert "".join(pieces) == f"That is {REDACTION_NOTICE} advice."
        assert screen.redactions == 1

    def test_trailing_word_is_held_back(self) -> None:
        screen = StreamSafetyFilter()

        assert screen.feed("Hello wor") == "Hello "
        assert screen.feed("ld") == ""
        assert screen.flush() == "world"
        assert screen.flush() == ""
