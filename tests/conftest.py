"""Shared pytest fixtures for the agent-rag test suite."""

from __future__ import annotations

import asyncio
import hashlib
import math
from collections.abc import AsyncIterator
from typing import Any

import pytest

from src.config.settings import Settings
from src.interfaces.embedding_provider import EmbeddingBatch, IEmbeddingProvider
from src.interfaces.llm_provider import ILLMProvider
from src.models.llm import LLMCompletion, StreamDelta
from src.models.source import IngestRequest, SourceType
from src.models.usage import TokenUsage
from src.pipeline.orchestrator import RAGOrchestrator
from src.pipeline.progress_tracker import ProgressTracker
from src.providers.cache.memory_cache import MemoryCacheProvider
from src.providers.store.memory_store import MemoryKnowledgeStore
from src.services.embedding_router import EmbeddingRouter
from src.services.ingestion import DeduplicationEngine, IngestionService
from src.services.llm import LLMRouter, StreamingHandler
from src.services.query import QueryEngine
from src.services.response_cache import ResponseCache
from src.services.usage_tracker import UsageTracker
from src.utils.errors import EmbeddingError, LLMError
from src.utils.text_normalizer import STOPWORDS, estimate_tokens, tokenize_words

# ---------------------------------------------------------------------------
# Sample content
# ---------------------------------------------------------------------------

PASSWORD_FAQ = (
    "To reset your password, open the account settings page and choose "
    "Reset password. A reset link is emailed to the address on file and "
    "expires after thirty minutes. If the email does not arrive, check the "
    "spam folder before requesting another link."
)

BILLING_FAQ = (
    "Invoices are issued on the first day of each month. Billing questions "
    "can be sent to the finance team, who reply within two business days. "
    "Refunds are processed to the original payment card."
)

SHIPPING_FAQ = (
    "Orders ship from the central warehouse within two days. Tracking "
    "numbers arrive by email once the parcel leaves the warehouse, and "
    "international shipping takes up to ten days."
)

SAMPLE_CONFIG: dict[str, Any] = {
    "app": {"name": "agent-rag", "version": "0.1.0"},
    "rag": {
        "defaults": {
            "max_sources": 5,
            "min_relevance_score": 0.3,
            "context_window": 3,
            "temperature": 0.7,
            "response": {"include_sources": True, "format_markdown": True},
        }
    },
    "agents": {
        "support-bot": {"template": "support", "max_sources": 4},
        "docs-bot": {"template": "coding"},
    },
}


# ---------------------------------------------------------------------------
# Deterministic embedding helpers
# ---------------------------------------------------------------------------

_EMBEDDING_DIM = 64


def _bag_of_words_vector(text: str, dim: int = _EMBEDDING_DIM) -> list[float]:
    """Hash each content word to a bucket and L2-normalize.

    Texts sharing words get a positive cosine similarity, which is enough
    for retrieval tests without a real model.
    """
    vector = [0.0] * dim
    for word in tokenize_words(text):
        if word in STOPWORDS:
            continue
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dim
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


class MockEmbeddingProvider(IEmbeddingProvider):
    """In-memory deterministic embedding provider for tests.

    ``fail_times`` transient failures are raised before calls start
    succeeding; ``fail_always`` makes every call fail terminally.
    """

    def __init__(
        self,
        name: str = "mock-embedding",
        model: str = "mock-embed-v1",
        fail_times: int = 0,
        fail_always: bool = False,
    ) -> None:
        self._name = name
        self._model = model
        self._fail_times = fail_times
        self._fail_always = fail_always
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingBatch:
        self.calls.append(list(texts))
        if self._fail_always:
            raise EmbeddingError("embedding backend down", provider_name=self._name)
        if self._fail_times > 0:
            self._fail_times -= 1
            raise EmbeddingError("temporary outage", provider_name=self._name, transient=True)
        return EmbeddingBatch(
            vectors=[_bag_of_words_vector(t) for t in texts],
            token_count=sum(estimate_tokens(t) for t in texts),
            model=model or self._model,
        )

    def get_dimension(self) -> int:
        return _EMBEDDING_DIM

    def get_provider_name(self) -> str:
        return self._name

    def get_default_model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        return True


class MockLLMProvider(ILLMProvider):
    """Scriptable chat provider.

    ``stream`` yields the reply one word at a time, then a usage-only
    delta, and records whether the iterator was closed.
    """

    def __init__(
        self,
        reply: str = "Open the account settings page and choose Reset password.",
        name: str = "mock-llm",
        model: str = "mock-chat-v1",
        streaming: bool = True,
        available: bool = True,
        error: Exception | None = None,
        delay: float = 0.0,
        report_usage: bool = True,
    ) -> None:
        self.reply = reply
        self._name = name
        self._model = model
        self._streaming = streaming
        self._available = available
        self.error = error
        self.delay = delay
        self.report_usage = report_usage
        self.complete_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []
        self.stream_closed = False

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        model: str | None = None,
    ) -> LLMCompletion:
        self.complete_calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "model": model,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return LLMCompletion(
            content=self.reply,
            usage=TokenUsage(input_tokens=estimate_tokens(user_prompt), output_tokens=12),
            provider=self._name,
            model=model or self._model,
            finish_reason="stop",
        )

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        model: str | None = None,
    ) -> AsyncIterator[StreamDelta]:
        self.stream_calls.append({"user_prompt": user_prompt, "model": model})
        try:
            if self.error is not None:
                raise self.error
            words = self.reply.split(" ")
            for i, word in enumerate(words):
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield StreamDelta(text=word if i == 0 else f" {word}")
            if self.report_usage:
                yield StreamDelta(
                    usage=TokenUsage(input_tokens=estimate_tokens(user_prompt), output_tokens=len(words))
                )
        finally:
            self.stream_closed = True

    def supports_chat(self) -> bool:
        return True

    def supports_streaming(self) -> bool:
        return self._streaming

    def get_provider_name(self) -> str:
        return self._name

    def get_default_model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        return self._available

    async def validate_credentials(self) -> bool:
        return self._available


def text_request(
    content: str,
    agent_id: str = "support-bot",
    title: str | None = None,
    source_type: SourceType = SourceType.TEXT,
    source_id: str | None = None,
) -> IngestRequest:
    return IngestRequest(
        agent_id=agent_id,
        content=content,
        source_type=source_type,
        title=title,
        source_id=source_id,
    )


# ---------------------------------------------------------------------------
# Provider and store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        openai_api_key="",
        anthropic_api_key="",
        ollama_base_url="",
        embedding_batch_delay_seconds=0.0,
    )


@pytest.fixture()
def sample_config() -> dict[str, Any]:
    return {
        key: dict(value) if isinstance(value, dict) else value
        for key, value in SAMPLE_CONFIG.items()
    }


@pytest.fixture()
def memory_store() -> MemoryKnowledgeStore:
    return MemoryKnowledgeStore()


@pytest.fixture()
def mock_embedding_provider() -> MockEmbeddingProvider:
    return MockEmbeddingProvider()


@pytest.fixture()
def mock_llm_provider() -> MockLLMProvider:
    return MockLLMProvider()


@pytest.fixture()
def usage_tracker(memory_store: MemoryKnowledgeStore) -> UsageTracker:
    return UsageTracker(memory_store)


@pytest.fixture()
def embedding_router(
    mock_embedding_provider: MockEmbeddingProvider, usage_tracker: UsageTracker
) -> EmbeddingRouter:
    return EmbeddingRouter(
        {"mock-embedding": mock_embedding_provider},
        default_provider="mock-embedding",
        usage_tracker=usage_tracker,
        batch_delay=0.0,
        retry_wait_multiplier=0.0,
    )


@pytest.fixture()
def llm_router(mock_llm_provider: MockLLMProvider, usage_tracker: UsageTracker) -> LLMRouter:
    return LLMRouter(
        {"mock-llm": mock_llm_provider}, default_provider="mock-llm", usage_tracker=usage_tracker
    )


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def progress_tracker() -> ProgressTracker:
    return ProgressTracker()


@pytest.fixture()
def ingestion_service(
    memory_store: MemoryKnowledgeStore,
    embedding_router: EmbeddingRouter,
    progress_tracker: ProgressTracker,
    response_cache: ResponseCache,
) -> IngestionService:
    return IngestionService(
        store=memory_store,
        embedding_router=embedding_router,
        deduplication=DeduplicationEngine(memory_store),
        progress_tracker=progress_tracker,
        response_cache=response_cache,
    )


@pytest.fixture()
def query_engine(memory_store: MemoryKnowledgeStore, embedding_router: EmbeddingRouter) -> QueryEngine:
    return QueryEngine(memory_store, embedding_router)


@pytest.fixture()
def response_cache() -> ResponseCache:
    return ResponseCache(MemoryCacheProvider(max_size=100, ttl=3600))


@pytest.fixture()
def orchestrator(
    query_engine: QueryEngine,
    llm_router: LLMRouter,
    response_cache: ResponseCache,
) -> RAGOrchestrator:
    return RAGOrchestrator(
        query_engine=query_engine,
        llm_router=llm_router,
        streaming_handler=StreamingHandler(llm_router),
        response_cache=response_cache,
    )


@pytest.fixture()
def app_components(
    settings: Settings,
    memory_store: MemoryKnowledgeStore,
    mock_llm_provider: MockLLMProvider,
    mock_embedding_provider: MockEmbeddingProvider,
    sample_config: dict[str, Any],
) -> dict[str, Any]:
    """Full component graph wired with mock providers over the memory store."""
    from src.main import build_components

    return build_components(
        settings,
        store=memory_store,
        llm_providers={"mock-llm": mock_llm_provider},
        embedding_providers={"mock-embedding": mock_embedding_provider},
        config=sample_config,
    )


@pytest.fixture()
def client(app_components: dict[str, Any]):
    """FastAPI TestClient over an app built from mock components."""
    from fastapi.testclient import TestClient

    from src.main import create_app

    with TestClient(create_app(app_components)) as test_client:
        yield test_client
