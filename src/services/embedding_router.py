"""Embedding provider routing, batching and pacing.

The router owns every embedding call the pipeline makes.  Per text it
picks a provider:

1. the caller's explicit preference, when that provider is registered;
2. the configured long-text provider, for texts longer than 8,000
   characters, when one is registered and serves the default provider's
   model and dimension (queries are always embedded by the default);
3. the default provider.

Texts are sent in batches of ``batch_size`` (100).  At most
``max_concurrent_batches`` (3) batches are in flight, and each batch slot
waits ``batch_delay`` seconds before taking the next batch, which keeps
bulk ingestion under provider rate limits.  Transient failures (timeouts,
5xx, rate limits) are retried with exponential backoff via tenacity; a
batch that still fails fails the whole call with an
:class:`~src.utils.errors.UpstreamProviderError`.

Every successful provider call writes one usage record.
"""

from __future__ import annotations

import asyncio

import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.interfaces.embedding_provider import EmbeddingBatch, IEmbeddingProvider
from src.models.usage import TokenUsage, UsageOperation
from src.services.usage_tracker import UsageTracker
from src.utils.errors import ConfigurationError, EmbeddingError, UpstreamProviderError

logger = structlog.get_logger(logger_name=__name__)

LONG_TEXT_THRESHOLD = 8000


class EmbeddingResult(BaseModel):
    """One text's vector with the provider, model and cost that produced it."""

    model_config = ConfigDict(frozen=True)

    vector: list[float]
    token_count: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0.0)
    provider: str
    model: str


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamProviderError) and exc.transient


class EmbeddingRouter:
    """Routes embedding requests to registered providers.

    Parameters
    ----------
    providers:
        Registered providers keyed by name.
    default_provider:
        Name of the provider used when no other rule applies.
    usage_tracker:
        Receives one record per successful provider call.
    long_text_provider:
        Provider for texts over :data:`LONG_TEXT_THRESHOLD` characters.
    batch_size, max_concurrent_batches, batch_delay:
        Batching and pacing knobs.
    max_attempts, retry_wait_multiplier:
        Backoff for transient failures (``multiplier=0`` disables waiting).
    """

    def __init__(
        self,
        providers: dict[str, IEmbeddingProvider],
        default_provider: str,
        usage_tracker: UsageTracker | None = None,
        long_text_provider: str | None = None,
        batch_size: int = 100,
        max_concurrent_batches: int = 3,
        batch_delay: float = 1.0,
        max_attempts: int = 3,
        retry_wait_multiplier: float = 1.0,
    ) -> None:
        if default_provider not in providers:
            raise ConfigurationError(
                f"Default embedding provider {default_provider!r} is not registered"
            )
        self._providers = dict(providers)
        self._default = default_provider
        self._long_text = self._same_space_provider(long_text_provider)
        self._usage = usage_tracker
        self._batch_size = max(1, batch_size)
        self._max_concurrent = max(1, max_concurrent_batches)
        self._batch_delay = max(0.0, batch_delay)
        self._max_attempts = max(1, max_attempts)
        self._retry_wait_multiplier = retry_wait_multiplier

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    @property
    def default_provider(self) -> IEmbeddingProvider:
        return self._providers[self._default]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def select_provider(self, text_length: int, preferred: str | None = None) -> str:
        """Return the provider name for a text of *text_length* characters."""
        if preferred:
            if preferred in self._providers:
                return preferred
            logger.warning("embedding_provider_not_registered", requested=preferred)
        if self._long_text and text_length > LONG_TEXT_THRESHOLD:
            return self._long_text
        return self._default

    async def embed(
        self,
        text: str,
        provider: str | None = None,
        model: str | None = None,
        agent_id: str | None = None,
        source_id: str | None = None,
    ) -> EmbeddingResult:
        """Embed a single text."""
        results = await self.embed_batch(
            [text], provider=provider, model=model, agent_id=agent_id, source_id=source_id
        )
        return results[0]

    async def embed_batch(
        self,
        texts: list[str],
        provider: str | None = None,
        model: str | None = None,
        agent_id: str | None = None,
        source_id: str | None = None,
    ) -> list[EmbeddingResult]:
        """Embed *texts*; results are positionally aligned with the input.

        Raises
        ------
        UpstreamProviderError
            If any batch fails after retries.  Usage already recorded for
            successful batches stands.
        """
        if not texts:
            return []

        groups: dict[str, list[int]] = {}
        for i, text in enumerate(texts):
            groups.setdefault(self.select_provider(len(text), provider), []).append(i)

        jobs: list[tuple[str, list[int]]] = []
        for name, indices in groups.items():
            for start in range(0, len(indices), self._batch_size):
                jobs.append((name, indices[start : start + self._batch_size]))

        semaphore = asyncio.Semaphore(self._max_concurrent)
        remaining = len(jobs)

        async def _run(name: str, indices: list[int]) -> list[tuple[int, EmbeddingResult]]:
            nonlocal remaining
            async with semaphore:
                batch = await self._call_provider(
                    name, [texts[i] for i in indices], model, agent_id, source_id
                )
                remaining -= 1
                if remaining > 0 and self._batch_delay:
                    await asyncio.sleep(self._batch_delay)
            return self._split_results(name, indices, texts, batch)

        outcomes = await asyncio.gather(*(_run(n, idx) for n, idx in jobs), return_exceptions=True)

        results: list[EmbeddingResult | None] = [None] * len(texts)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if isinstance(outcome, UpstreamProviderError):
                    raise outcome
                raise EmbeddingError(f"Embedding batch failed: {outcome}") from outcome
            for index, result in outcome:
                results[index] = result

        logger.info(
            "embedding_complete",
            texts=len(texts),
            batches=len(jobs),
            providers=sorted(groups),
        )
        return [r for r in results if r is not None]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _same_space_provider(self, name: str | None) -> str | None:
        """Accept *name* only if its vectors are comparable with the default's.

        Queries are embedded by the default provider, so a long-text
        provider with another model or dimension would store vectors no
        query can ever match.
        """
        if not name or name not in self._providers:
            return None
        candidate = self._providers[name]
        default = self._providers[self._default]
        if (candidate.get_default_model(), candidate.get_dimension()) != (
            default.get_default_model(),
            default.get_dimension(),
        ):
            logger.warning(
                "long_text_provider_ignored",
                provider=name,
                model=candidate.get_default_model(),
                default_model=default.get_default_model(),
            )
            return None
        return name

    async def _call_provider(
        self,
        name: str,
        batch_texts: list[str],
        model: str | None,
        agent_id: str | None,
        source_id: str | None,
    ) -> EmbeddingBatch:
        provider = self._providers[name]
        batch: EmbeddingBatch | None = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_wait_multiplier, min=0, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "embedding_batch_retry",
                        provider=name,
                        attempt=attempt.retry_state.attempt_number,
                    )
                batch = await provider.embed(batch_texts, model=model)

        if batch is None or len(batch.vectors) != len(batch_texts):
            raise EmbeddingError(
                f"Provider returned {0 if batch is None else len(batch.vectors)} vectors "
                f"for {len(batch_texts)} texts",
                provider_name=name,
            )

        logger.debug("embedding_batch", provider=name, size=len(batch_texts), tokens=batch.token_count)
        if self._usage is not None:
            await self._usage.record(
                provider=name,
                model=batch.model,
                operation=UsageOperation.EMBEDDING,
                usage=TokenUsage(input_tokens=batch.token_count),
                agent_id=agent_id,
                source_id=source_id,
            )
        return batch

    def _split_results(
        self,
        name: str,
        indices: list[int],
        texts: list[str],
        batch: EmbeddingBatch,
    ) -> list[tuple[int, EmbeddingResult]]:
        """Apportion batch tokens and cost to texts by character share."""
        total_chars = sum(len(texts[i]) for i in indices) or 1
        batch_cost = (
            self._usage.calculate_cost(name, batch.model, batch.token_count, 0) if self._usage else 0.0
        )
        out: list[tuple[int, EmbeddingResult]] = []
        for index, vector in zip(indices, batch.vectors):
            share = len(texts[index]) / total_chars
            out.append(
                (
                    index,
                    EmbeddingResult(
                        vector=vector,
                        token_count=round(batch.token_count * share),
                        cost=batch_cost * share,
                        provider=name,
                        model=batch.model,
                    ),
                )
            )
        return out
