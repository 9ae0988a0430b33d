"""FastAPI API routes for agent-rag.

Provides REST endpoints for chat (plain and streamed over Server-Sent
Events), source ingestion, training job status, cache management, config
validation, usage metrics and health.  Service dependencies are resolved
from ``app.state`` via FastAPI's ``Depends`` using the ``Annotated``
pattern.

# ─── API ROUTE MAP ────────────────────────────────────────────────────
#
# Endpoint                                   Method  Description
# ─────────────────────────────────────────────────────────────────────
# /api/v1/chat                               POST    Answer a query
# /api/v1/chat/stream                        POST    Answer as SSE events
# /api/v1/agents/{aid}/sources               POST    Ingest one source
# /api/v1/agents/{aid}/sources/batch         POST    Ingest many sources
# /api/v1/agents/{aid}/stats                 GET     Knowledge base stats
# /api/v1/agents/{aid}/cache/invalidate      POST    Drop cached answers
# /api/v1/sources/{sid}                      DELETE  Deactivate or purge
# /api/v1/jobs/{jid}                         GET     Training job progress
# /api/v1/cache/stats                        GET     Cache hit/miss stats
# /api/v1/config/validate                    POST    Check agent options
# /api/v1/usage                              GET     Token and cost totals
# /api/v1/health                             GET     Health + providers
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from src.api.schemas import (
    BatchIngestRequest,
    BatchIngestResponse,
    CacheInvalidateResponse,
    CacheStatsResponse,
    ChatRequest,
    ChatResponse,
    ConfigValidateRequest,
    ConfigValidateResponse,
    CorpusStatsResponse,
    ErrorResponse,
    HealthResponse,
    IngestFailure,
    IngestResponse,
    IngestSourceRequest,
    JobStatusResponse,
    RemoveSourceResponse,
    UsageResponse,
)
from src.config.loader import resolve_agent_config
from src.models.agent_config import TEMPLATES, AgentRAGConfig, merge_options
from src.models.llm import StreamEvent
from src.models.pipeline import RAGRequest
from src.models.source import IngestRequest
from src.pipeline.orchestrator import RAGOrchestrator
from src.services.ingestion.ingestion_service import IngestionService
from src.services.llm.streaming import CancellationToken
from src.services.response_cache import ResponseCache
from src.services.usage_tracker import UsageTracker
from src.utils.errors import IngestionPhaseError, ValidationError
from src.utils.logging import bind_request_context, get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

# All routes in this file are prefixed with /api/v1.
router = APIRouter(prefix="/api/v1")

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


# ---------------------------------------------------------------------------
# Dependency injection helpers: resolve singletons from app.state
# ---------------------------------------------------------------------------


def _get_orchestrator(request: Request) -> RAGOrchestrator:
    return request.app.state.orchestrator


def _get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service


def _get_response_cache(request: Request) -> ResponseCache:
    return request.app.state.response_cache


def _get_usage_tracker(request: Request) -> UsageTracker:
    return request.app.state.usage_tracker


def _get_config(request: Request) -> dict:
    return request.app.state.config


OrchestratorDep = Annotated[RAGOrchestrator, Depends(_get_orchestrator)]
IngestionDep = Annotated[IngestionService, Depends(_get_ingestion_service)]
CacheDep = Annotated[ResponseCache, Depends(_get_response_cache)]
UsageDep = Annotated[UsageTracker, Depends(_get_usage_tracker)]
ConfigDep = Annotated[dict, Depends(_get_config)]


def _rag_request(body: ChatRequest, config: dict, stream: bool) -> RAGRequest:
    if not body.query.strip():
        raise ValidationError(errors=["query: must not be empty"])
    agent_config = resolve_agent_config(config, body.agent_id, overrides=body.config)
    bind_request_context(agent_id=body.agent_id, conversation_id=body.conversation_id)
    return RAGRequest(
        query=body.query,
        agent_id=body.agent_id,
        conversation_id=body.conversation_id,
        config=agent_config,
        stream=stream,
    )


def _sse(event: StreamEvent) -> str:
    return f"event: {event.type.value}\ndata: {event.model_dump_json()}\n\n"


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@router.post(
    "/chat",
    response_model=ChatResponse,
    responses={422: {"model": ErrorResponse}},
    summary="Answer a query from an agent's knowledge base",
)
async def chat(body: ChatRequest, orchestrator: OrchestratorDep, config: ConfigDep) -> ChatResponse:
    """Run the full RAG lifecycle and return the answer with its citations.

    Provider failures do not raise: the answer is the fallback text and
    ``stage`` is ``failed``.
    """
    result = await orchestrator.answer(_rag_request(body, config, stream=False))
    return ChatResponse.from_result(result)


@router.post(
    "/chat/stream",
    responses={422: {"model": ErrorResponse}},
    summary="Stream an answer as Server-Sent Events",
)
async def chat_stream(
    body: ChatRequest,
    request: Request,
    orchestrator: OrchestratorDep,
    config: ConfigDep,
) -> StreamingResponse:
    """Stream ``delta`` events followed by exactly one ``complete`` event.

    A client disconnect cancels generation; the completion event is still
    produced server-side so partial usage is recorded.
    """
    rag_request = _rag_request(body, config, stream=True)
    token = CancellationToken()

    async def _events() -> AsyncIterator[str]:
        stream = orchestrator.answer_stream(rag_request, token)
        try:
            async for event in stream:
                if not token.cancelled and await request.is_disconnected():
                    _logger.info("chat_stream_client_disconnected", request_id=rag_request.request_id)
                    token.cancel()
                yield _sse(event)
        finally:
            token.cancel()
            await stream.aclose()

    return StreamingResponse(_events(), media_type="text/event-stream", headers=_SSE_HEADERS)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


def _ingest_request(agent_id: str, body: IngestSourceRequest) -> IngestRequest:
    return IngestRequest(agent_id=agent_id, **body.model_dump())


@router.post(
    "/agents/{agent_id}/sources",
    response_model=IngestResponse,
    status_code=201,
    responses={422: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Ingest one source into an agent's knowledge base",
)
async def ingest_source(
    agent_id: str, body: IngestSourceRequest, ingestion: IngestionDep
) -> IngestResponse:
    result = await ingestion.ingest(_ingest_request(agent_id, body))
    return IngestResponse.from_result(result)


@router.post(
    "/agents/{agent_id}/sources/batch",
    response_model=BatchIngestResponse,
    responses={422: {"model": ErrorResponse}},
    summary="Ingest several sources under one training job",
)
async def ingest_batch(
    agent_id: str, body: BatchIngestRequest, ingestion: IngestionDep
) -> BatchIngestResponse:
    """Failed sources are listed in ``failures``; the rest are still stored."""
    outcomes = await ingestion.ingest_many([_ingest_request(agent_id, s) for s in body.sources])
    response = BatchIngestResponse()
    for outcome in outcomes:
        if isinstance(outcome, IngestionPhaseError):
            response.failures.append(IngestFailure(phase=outcome.phase, message=outcome.message))
            response.job_id = response.job_id or outcome.job_id
        else:
            response.results.append(IngestResponse.from_result(outcome))
            response.job_id = response.job_id or outcome.job_id
    return response


@router.delete(
    "/sources/{source_id}",
    response_model=RemoveSourceResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Deactivate (or purge) a source and its children",
)
async def remove_source(
    source_id: str,
    ingestion: IngestionDep,
    purge: Annotated[bool, Query(description="Delete permanently instead of deactivating")] = False,
) -> RemoveSourceResponse:
    removed = await ingestion.remove_source(source_id, purge=purge)
    if removed == 0:
        raise HTTPException(status_code=404, detail=f"Source {source_id} not found")
    return RemoveSourceResponse(source_id=source_id, removed=removed, purged=purge)


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get training job progress",
)
async def job_status(job_id: str, ingestion: IngestionDep) -> JobStatusResponse:
    job = await ingestion.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobStatusResponse(
        job_id=job.id,
        agent_id=job.agent_id,
        status=job.status.value,
        progress=round(job.progress * 100, 1),
        total_sources=job.total_sources,
        processed_sources=job.processed_sources,
        total_chunks=job.total_chunks,
        processed_chunks=job.processed_chunks,
        failed_chunks=job.failed_chunks,
        failed_phase=job.failed_phase,
        error=job.error,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


@router.get(
    "/agents/{agent_id}/stats",
    response_model=CorpusStatsResponse,
    summary="Get knowledge base statistics for an agent",
)
async def corpus_stats(agent_id: str, ingestion: IngestionDep) -> CorpusStatsResponse:
    stats = await ingestion.get_corpus_stats(agent_id)
    return CorpusStatsResponse(**stats.model_dump())


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@router.post(
    "/agents/{agent_id}/cache/invalidate",
    response_model=CacheInvalidateResponse,
    summary="Drop every cached answer for an agent",
)
async def invalidate_cache(agent_id: str, cache: CacheDep) -> CacheInvalidateResponse:
    invalidated = await cache.invalidate(agent_id)
    return CacheInvalidateResponse(agent_id=agent_id, invalidated=invalidated)


@router.get(
    "/cache/stats",
    response_model=CacheStatsResponse,
    summary="Response cache statistics",
)
async def cache_stats(
    cache: CacheDep,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> CacheStatsResponse:
    stats = await cache.stats()
    top = await cache.top_queries(limit)
    return CacheStatsResponse(
        size=stats.size,
        hits=stats.hits,
        misses=stats.misses,
        hit_rate=stats.hit_rate,
        top_queries=[q.model_dump(mode="json") for q in top],
    )


# ---------------------------------------------------------------------------
# Configuration, usage, health
# ---------------------------------------------------------------------------


@router.post(
    "/config/validate",
    response_model=ConfigValidateResponse,
    summary="Validate agent RAG options without saving them",
)
async def validate_config(body: ConfigValidateRequest) -> ConfigValidateResponse:
    """Report every violated constraint at once.

    A ``template`` is applied first and ``config`` overrides it.
    """
    data: dict[str, Any] = {}
    if body.template is not None:
        if body.template not in TEMPLATES:
            return ConfigValidateResponse(
                valid=False,
                errors=[f"template: unknown template '{body.template}' (choose from {sorted(TEMPLATES)})"],
            )
        data = dict(TEMPLATES[body.template])
    data = merge_options(data, dict(body.config))

    errors = AgentRAGConfig.validate_values(data)
    if errors:
        return ConfigValidateResponse(valid=False, errors=errors)
    return ConfigValidateResponse(
        valid=True, config=AgentRAGConfig.from_dict(data).model_dump(mode="json")
    )


@router.get(
    "/usage",
    response_model=UsageResponse,
    summary="Token and cost totals",
)
async def usage_metrics(
    usage: UsageDep,
    agent_id: Annotated[str | None, Query()] = None,
) -> UsageResponse:
    metrics = await usage.get_metrics(agent_id)
    return UsageResponse(agent_id=agent_id, metrics=metrics)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check(request: Request) -> HealthResponse:
    """Return application health, version, and provider registrations.

    ``degraded`` when the knowledge store cannot answer a stats query.
    """
    providers: dict[str, Any] = dict(getattr(request.app.state, "provider_registry", {}))
    status = "healthy"

    store = getattr(request.app.state, "store", None)
    if store is not None:
        try:
            await store.get_stats("__health__")
            providers["store_ok"] = True
        except Exception as exc:  # noqa: BLE001
            _logger.warning("health_store_check_failed", error=str(exc))
            providers["store_ok"] = False
            status = "degraded"

    if not providers.get("llm"):
        status = "unhealthy"

    return HealthResponse(status=status, version=request.app.version, providers=providers)
