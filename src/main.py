"""agent-rag FastAPI application entry point.

Wires together all providers, services, and routes via dependency injection.
Loads configuration from ``.env`` and ``config/config.yaml`` and configures
structured logging.

``build_components`` is also used by the CLI, so the same wiring runs
outside the web server.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI

from src.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from src.api.routes import router as api_router
from src.config.loader import load_config
from src.config.settings import Settings
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.knowledge_store import IKnowledgeStore
from src.interfaces.llm_provider import ILLMProvider
from src.pipeline.orchestrator import RAGOrchestrator
from src.pipeline.progress_tracker import ProgressTracker
from src.providers.cache.memory_cache import MemoryCacheProvider
from src.providers.embedding.nomic_embedding_provider import NomicEmbeddingProvider
from src.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from src.providers.llm.anthropic_provider import AnthropicLLMProvider
from src.providers.llm.ollama_provider import OllamaLLMProvider
from src.providers.llm.openai_provider import OpenAILLMProvider
from src.providers.store.memory_store import MemoryKnowledgeStore
from src.providers.store.sqlite_store import SQLiteKnowledgeStore
from src.services.embedding_router import EmbeddingRouter
from src.services.ingestion import (
    CompressionEngine,
    ContentExtractor,
    DeduplicationEngine,
    IngestionService,
    SemanticChunker,
)
from src.services.llm import LLMRouter, ResponsePostProcessor, StreamingHandler
from src.services.query import QueryEngine
from src.services.response_cache import ResponseCache
from src.services.usage_tracker import UsageTracker
from src.utils.errors import ConfigurationError
from src.utils.logging import configure_logging, get_logger

APP_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Module-level settings & logging
# ---------------------------------------------------------------------------

settings = Settings()

configure_logging(
    log_level=settings.log_level,
    json_output=(settings.app_env == "production"),
)
_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


def _build_llm_providers(app_settings: Settings) -> dict[str, ILLMProvider]:
    """Register every chat provider that has credentials or an endpoint.

    Ollama is registered whenever a base URL is set; it needs no key.
    """
    providers: dict[str, ILLMProvider] = {}
    if app_settings.anthropic_api_key:
        providers["anthropic"] = AnthropicLLMProvider(settings=app_settings)
    if app_settings.openai_api_key:
        providers["openai"] = OpenAILLMProvider(settings=app_settings)
    if app_settings.ollama_base_url:
        providers["ollama"] = OllamaLLMProvider(settings=app_settings)
    return providers


def _build_embedding_providers(
    app_settings: Settings,
) -> tuple[dict[str, IEmbeddingProvider], str]:
    """Register embedding providers and pick the default.

    Priority: OpenAI (if keyed), then Nomic via Ollama.  An explicit
    ``DEFAULT_EMBEDDING_PROVIDER`` wins when it is registered.
    """
    providers: dict[str, IEmbeddingProvider] = {}
    if app_settings.openai_api_key:
        providers["openai"] = OpenAIEmbeddingProvider(settings=app_settings)
    if app_settings.ollama_base_url:
        providers["nomic"] = NomicEmbeddingProvider(settings=app_settings)
    if not providers:
        raise ConfigurationError(
            "No embedding provider configured: set OPENAI_API_KEY or OLLAMA_BASE_URL"
        )

    default = app_settings.default_embedding_provider
    if default not in providers:
        default = "openai" if "openai" in providers else "nomic"
    return providers, default


def _build_store(app_settings: Settings) -> IKnowledgeStore:
    backend = app_settings.store_backend.lower()
    if backend == "sqlite":
        return SQLiteKnowledgeStore(db_path=app_settings.sqlite_db_path)
    if backend == "memory":
        return MemoryKnowledgeStore()
    raise ConfigurationError(f"Unknown STORE_BACKEND {app_settings.store_backend!r}")


# ---------------------------------------------------------------------------
# Full DI assembly
# ---------------------------------------------------------------------------


def build_components(
    app_settings: Settings,
    *,
    store: IKnowledgeStore | None = None,
    llm_providers: dict[str, ILLMProvider] | None = None,
    embedding_providers: dict[str, IEmbeddingProvider] | None = None,
    default_embedding_provider: str | None = None,
    config: dict | None = None,
) -> dict[str, Any]:
    """Construct every provider and service instance for the application.

    Keyword arguments replace the settings-driven providers; tests use
    them to inject fakes.  Returns a flat dict of named components to be
    stored on ``app.state``.
    """
    config = config if config is not None else load_config(settings=app_settings)
    store = store or _build_store(app_settings)

    # -- Providers --
    if llm_providers is None:
        llm_providers = _build_llm_providers(app_settings)
    if not llm_providers:
        raise ConfigurationError("No LLM provider configured")
    if embedding_providers is None:
        embedding_providers, default_embedding = _build_embedding_providers(app_settings)
    else:
        default_embedding = default_embedding_provider or next(iter(embedding_providers))

    default_llm = app_settings.resolve_default_llm_provider()
    if default_llm not in llm_providers:
        default_llm = next(iter(llm_providers))

    # -- Services --
    usage_tracker = UsageTracker(store)
    embedding_router = EmbeddingRouter(
        embedding_providers,
        default_provider=default_embedding,
        usage_tracker=usage_tracker,
        long_text_provider=app_settings.long_text_embedding_provider or None,
        batch_size=app_settings.embedding_batch_size,
        max_concurrent_batches=app_settings.embedding_max_concurrent_batches,
        batch_delay=app_settings.embedding_batch_delay_seconds,
        max_attempts=app_settings.embedding_max_retries,
    )
    llm_router = LLMRouter(llm_providers, default_provider=default_llm, usage_tracker=usage_tracker)

    response_cache = ResponseCache(
        MemoryCacheProvider(
            max_size=app_settings.cache_max_entries, ttl=app_settings.cache_ttl_seconds
        )
    )
    query_engine = QueryEngine(store, embedding_router)
    progress_tracker = ProgressTracker()
    ingestion_service = IngestionService(
        store=store,
        embedding_router=embedding_router,
        extractor=ContentExtractor(),
        compression=CompressionEngine(),
        chunker=SemanticChunker(),
        deduplication=DeduplicationEngine(store),
        progress_tracker=progress_tracker,
        max_concurrent_sources=app_settings.ingestion_max_concurrent_sources,
        response_cache=response_cache,
    )
    orchestrator = RAGOrchestrator(
        query_engine=query_engine,
        llm_router=llm_router,
        streaming_handler=StreamingHandler(llm_router),
        response_cache=response_cache,
        post_processor=ResponsePostProcessor(),
    )

    provider_registry: dict[str, Any] = {
        "llm": sorted(llm_providers),
        "llm_default": default_llm,
        "embedding": sorted(embedding_providers),
        "embedding_default": default_embedding,
        "store": store.get_provider_name(),
    }

    return {
        "settings": app_settings,
        "config": config,
        "store": store,
        "usage_tracker": usage_tracker,
        "embedding_router": embedding_router,
        "llm_router": llm_router,
        "response_cache": response_cache,
        "query_engine": query_engine,
        "progress_tracker": progress_tracker,
        "ingestion_service": ingestion_service,
        "orchestrator": orchestrator,
        "provider_registry": provider_registry,
    }


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def _make_lifespan(components: dict[str, Any] | None):
    @asynccontextmanager
    async def _lifespan(application: FastAPI):  # noqa: ANN202
        """Initialise all providers and services on startup, clean up on shutdown."""
        built = components if components is not None else build_components(settings)
        for key, value in built.items():
            setattr(application.state, key, value)

        store: IKnowledgeStore = built["store"]
        await store.initialize()

        _logger.info(
            "app_startup",
            version=APP_VERSION,
            environment=built["settings"].app_env,
            providers=built["provider_registry"],
        )

        yield

        await store.close()
        _logger.info("app_shutdown", message="Knowledge store closed")

    return _lifespan


def create_app(components: dict[str, Any] | None = None) -> FastAPI:
    """Build and configure the FastAPI application.

    Parameters
    ----------
    components:
        Prebuilt component dict (see :func:`build_components`).  When
        omitted the components are built from ``Settings`` at startup.
    """
    application = FastAPI(
        title="agent-rag API",
        version=APP_VERSION,
        description=(
            "Ingest an agent's knowledge sources, then answer user questions "
            "with retrieved, cited context, streamed or in one response."
        ),
        lifespan=_make_lifespan(components),
    )

    # -- Middleware (order matters: last added = first executed) --
    application.add_middleware(ErrorHandlingMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    configure_cors(application)

    # -- API routes --
    application.include_router(api_router)

    return application


app = create_app()

# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=(settings.app_env == "development"),
    )
