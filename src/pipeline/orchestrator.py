"""Request/response orchestrator for retrieval-augmented answers.

Coordinates the response cache, query engine, LLM router and response
post-processor into one request lifecycle::

    VALIDATING -> [cache lookup] -> RETRIEVING -> GENERATING -> POST_PROCESSING -> DONE
                                                                 any stage -> FAILED

Error policy per stage:

- VALIDATING: an empty query or agent id raises
  :class:`~src.utils.errors.ValidationError` to the caller.  This is the
  only error that escapes.
- Cache: backend trouble is absorbed by the cache itself (a miss).
- RETRIEVING: any failure is logged as ``RetrievalDegraded`` and the
  request continues with empty context; the LLM is told no relevant
  context was found.
- GENERATING: a provider failure ends the request in ``FAILED`` with a
  user-safe fallback answer and a structured :class:`StageError`.
- POST_PROCESSING: a failure keeps the raw answer and records a
  recoverable :class:`StageError`.

Successful answers are written to the cache when the agent has caching
enabled.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator

import structlog

from src.models.agent_config import AgentRAGConfig
from src.models.llm import GenerationOptions, StreamEvent, StreamEventType
from src.models.pipeline import PerformanceMetrics, RAGRequest, RAGResult, RAGStage, StageError
from src.models.query import CitedSource, ContextBundle
from src.models.usage import TokenUsage
from src.services.llm.llm_router import LLMRouter
from src.services.llm.post_processor import ResponsePostProcessor, StreamSafetyFilter
from src.services.llm.streaming import CancellationToken, StreamingHandler
from src.services.query.query_engine import QueryEngine
from src.services.response_cache import ResponseCache
from src.utils.errors import AgentRAGError, RetrievalDegraded, ValidationError

logger = structlog.get_logger(logger_name=__name__)

FALLBACK_ANSWER = "I wasn't able to answer that question right now. Please try again."


def _ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class RAGOrchestrator:
    """Answers user queries from an agent's knowledge base.

    Parameters
    ----------
    query_engine:
        Retrieves the ranked context bundle.
    llm_router:
        Generates non-streamed answers.
    streaming_handler:
        Generates streamed answers; built from *llm_router* when omitted.
    response_cache:
        Optional answer cache.
    post_processor:
        Applies citations, markdown and safety settings.
    default_config:
        Agent config used when a request carries none.
    """

    def __init__(
        self,
        query_engine: QueryEngine,
        llm_router: LLMRouter,
        streaming_handler: StreamingHandler | None = None,
        response_cache: ResponseCache | None = None,
        post_processor: ResponsePostProcessor | None = None,
        default_config: AgentRAGConfig | None = None,
    ) -> None:
        self._query_engine = query_engine
        self._llm_router = llm_router
        self._streaming = streaming_handler or StreamingHandler(llm_router)
        self._cache = response_cache
        self._post_processor = post_processor or ResponsePostProcessor()
        self._default_config = default_config or AgentRAGConfig()

    @property
    def response_cache(self) -> ResponseCache | None:
        return self._cache

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def answer(self, request: RAGRequest) -> RAGResult:
        """Run the full lifecycle for *request* and return the answer.

        Raises
        ------
        ValidationError
            If the query or agent id is empty.
        """
        total_start = time.perf_counter()
        config = self._validate(request)
        validation_ms = _ms(total_start)
        log = logger.bind(request_id=request.request_id, agent_id=request.agent_id)

        cache_options = config.cache_options()
        if config.caching_enabled and self._cache is not None:
            entry = await self._cache.get(request.query, request.agent_id, cache_options)
            if entry is not None:
                log.info("rag_cache_hit", hit_count=entry.metadata.hit_count)
                return RAGResult(
                    request_id=request.request_id,
                    answer=entry.response,
                    sources=entry.sources,
                    cache_hit=True,
                    stage=RAGStage.DONE,
                    performance=PerformanceMetrics(
                        total_ms=_ms(total_start), validation_ms=validation_ms
                    ),
                )

        errors: list[StageError] = []

        retrieval_start = time.perf_counter()
        bundle = await self._retrieve(request, config, errors)
        retrieval_ms = _ms(retrieval_start)
        sources = self.cited_sources(bundle)

        generation_start = time.perf_counter()
        try:
            completion = await self._llm_router.route(
                request.query,
                bundle.texts(),
                provider=config.preferred_provider,
                options=self.generation_options(config, request.agent_id),
            )
        except Exception as exc:  # noqa: BLE001
            errors.append(self._stage_error(RAGStage.GENERATING, exc, recoverable=False))
            log.error("rag_stage_failed", stage=RAGStage.GENERATING.value, error=str(exc))
            return RAGResult(
                request_id=request.request_id,
                answer=FALLBACK_ANSWER,
                stage=RAGStage.FAILED,
                errors=errors,
                performance=PerformanceMetrics(
                    total_ms=_ms(total_start),
                    validation_ms=validation_ms,
                    retrieval_ms=retrieval_ms,
                    generation_ms=_ms(generation_start),
                ),
                context_chunks=len(bundle.chunks),
                relevance_score=bundle.relevance_score,
            )
        generation_ms = _ms(generation_start)

        post_start = time.perf_counter()
        answer = completion.content
        try:
            processed = self._post_processor.process(answer, sources, config.response)
            answer = processed.content
        except Exception as exc:  # noqa: BLE001
            errors.append(self._stage_error(RAGStage.POST_PROCESSING, exc, recoverable=True))
            log.warning("rag_stage_failed", stage=RAGStage.POST_PROCESSING.value, error=str(exc))
        post_processing_ms = _ms(post_start)

        if config.caching_enabled and self._cache is not None:
            await self._cache.set(
                request.query,
                request.agent_id,
                answer,
                sources,
                cache_options,
                processing_time_ms=_ms(total_start),
            )

        result = RAGResult(
            request_id=request.request_id,
            answer=answer,
            sources=sources,
            stage=RAGStage.DONE,
            errors=errors,
            performance=PerformanceMetrics(
                total_ms=_ms(total_start),
                validation_ms=validation_ms,
                retrieval_ms=retrieval_ms,
                generation_ms=generation_ms,
                post_processing_ms=post_processing_ms,
            ),
            usage=completion.usage,
            provider=completion.provider,
            model=completion.model,
            context_chunks=len(bundle.chunks),
            relevance_score=bundle.relevance_score,
        )
        log.info(
            "rag_answer_complete",
            provider=result.provider,
            context_chunks=result.context_chunks,
            total_ms=result.performance.total_ms,
            degraded=bool(errors),
        )
        return result

    async def answer_stream(
        self, request: RAGRequest, token: CancellationToken | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Stream the answer to *request* as ``delta`` events and one ``complete``.

        The response cache is bypassed.  When the agent has streaming
        disabled, the non-streamed answer is delivered as a single delta.
        With the safety filter on, deltas are screened a word at a time, so
        each delta may trail the provider's by one word.  When sources are
        included, the citation list arrives as a last ``delta`` before
        ``complete``, which carries the per-stage timings.

        Raises
        ------
        ValidationError
            On the first iteration, if the query or agent id is empty.
        """
        total_start = time.perf_counter()
        config = self._validate(request)
        validation_ms = _ms(total_start)
        log = logger.bind(request_id=request.request_id, agent_id=request.agent_id)

        if not config.streaming_enabled:
            result = await self.answer(request)
            yield StreamEvent(type=StreamEventType.DELTA, index=0, text=result.answer)
            yield StreamEvent(
                type=StreamEventType.COMPLETE,
                index=1,
                usage=result.usage,
                provider=result.provider or "",
                model=result.model or "",
                error=result.errors[0].message if result.failed else None,
                sources=result.sources,
                performance=result.performance,
            )
            return

        errors: list[StageError] = []
        retrieval_start = time.perf_counter()
        bundle = await self._retrieve(request, config, errors)
        retrieval_ms = _ms(retrieval_start)
        sources = self.cited_sources(bundle)
        screen = StreamSafetyFilter() if config.response.safety_filter else None
        index = 0
        completed = False
        generation_start = time.perf_counter()
        try:
            async for event in self._streaming.stream(
                request.query,
                bundle.texts(),
                provider=config.preferred_provider,
                options=self.generation_options(config, request.agent_id),
                token=token,
                sources=sources,
            ):
                if event.type == StreamEventType.DELTA:
                    text = screen.feed(event.text) if screen is not None else event.text
                    if text:
                        yield event.model_copy(update={"index": index, "text": text})
                        index += 1
                    continue

                # held-back text is dropped once the caller has cancelled
                if screen is not None and not event.cancelled:
                    tail = screen.flush()
                    if tail:
                        yield StreamEvent(
                            type=StreamEventType.DELTA,
                            index=index,
                            text=tail,
                            provider=event.provider,
                            model=event.model,
                        )
                        index += 1
                if event.type == StreamEventType.ERROR:
                    yield event.model_copy(update={"index": index})
                    continue

                completed = True
                generation_ms = _ms(generation_start)
                post_start = time.perf_counter()
                citations = self._citation_suffix(event, sources, config)
                if citations:
                    yield StreamEvent(
                        type=StreamEventType.DELTA,
                        index=index,
                        text=citations,
                        provider=event.provider,
                        model=event.model,
                    )
                    index += 1
                if screen is not None and screen.redactions:
                    log.info("rag_stream_redacted", redactions=screen.redactions)
                yield event.model_copy(
                    update={
                        "index": index,
                        "performance": PerformanceMetrics(
                            total_ms=_ms(total_start),
                            validation_ms=validation_ms,
                            retrieval_ms=retrieval_ms,
                            generation_ms=generation_ms,
                            post_processing_ms=_ms(post_start),
                        ),
                    }
                )
        except Exception as exc:  # noqa: BLE001
            if completed:
                raise
            log.error("rag_stage_failed", stage=RAGStage.GENERATING.value, error=str(exc))
            yield StreamEvent(type=StreamEventType.ERROR, index=index, error=FALLBACK_ANSWER)
            yield StreamEvent(
                type=StreamEventType.COMPLETE,
                index=index,
                usage=TokenUsage(estimated=True),
                error=str(exc),
                performance=PerformanceMetrics(
                    total_ms=_ms(total_start),
                    validation_ms=validation_ms,
                    retrieval_ms=retrieval_ms,
                    generation_ms=_ms(generation_start),
                ),
            )

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    def _validate(self, request: RAGRequest) -> AgentRAGConfig:
        problems: list[str] = []
        if not request.query or not request.query.strip():
            problems.append("query: must not be empty")
        if not request.agent_id or not request.agent_id.strip():
            problems.append("agent_id: must not be empty")
        if problems:
            logger.info("rag_request_rejected", request_id=request.request_id, errors=problems)
            raise ValidationError(errors=problems)
        return request.config or self._default_config

    async def _retrieve(
        self, request: RAGRequest, config: AgentRAGConfig, errors: list[StageError]
    ) -> ContextBundle:
        if not config.rag_enabled:
            return ContextBundle()
        try:
            return await self._query_engine.retrieve(request.query, request.agent_id, config)
        except Exception as exc:  # noqa: BLE001
            degraded = RetrievalDegraded(f"Retrieval failed, answering without context: {exc}")
            errors.append(self._stage_error(RAGStage.RETRIEVING, degraded, recoverable=True))
            logger.warning(
                "retrieval_degraded",
                request_id=request.request_id,
                agent_id=request.agent_id,
                error=str(exc),
            )
            return ContextBundle()

    @staticmethod
    def generation_options(config: AgentRAGConfig, agent_id: str) -> GenerationOptions:
        return GenerationOptions(
            system_prompt=config.system_prompt,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout_seconds=config.performance.timeout_seconds,
            agent_id=agent_id,
        )

    @staticmethod
    def cited_sources(bundle: ContextBundle) -> list[CitedSource]:
        """One citation per source in the bundle, by best chunk similarity."""
        best: dict[str, float] = {}
        for ranked in bundle.chunks:
            best[ranked.source_id] = max(best.get(ranked.source_id, 0.0), ranked.retrieved.similarity)
        return [
            CitedSource(
                id=source.source_id,
                name=source.source_name or source.source_id,
                relevance=round(best.get(source.source_id, 0.0), 4),
                source_type=source.source_type,
            )
            for source in bundle.sources
        ]

    def _citation_suffix(
        self, event: StreamEvent, sources: list[CitedSource], config: AgentRAGConfig
    ) -> str:
        if event.cancelled or event.error or not sources or not config.response.include_sources:
            return ""
        return self._post_processor.add_citations("", sources)

    @staticmethod
    def _stage_error(stage: RAGStage, exc: Exception, recoverable: bool) -> StageError:
        return StageError(
            stage=stage,
            error_type=type(exc).__name__,
            message=exc.message if isinstance(exc, AgentRAGError) else str(exc),
            provider=exc.provider_name if isinstance(exc, AgentRAGError) else None,
            recoverable=recoverable,
        )
