"""Unit tests for vector math, concurrency helpers and the error hierarchy."""

from __future__ import annotations

import asyncio

import numpy as np
import pytest

from src.utils.concurrency import KeyedLocks, throttled_gather
from src.utils.errors import (
    AgentRAGError,
    IngestionPhaseError,
    LLMError,
    RateLimitError,
    UpstreamProviderError,
    ValidationError,
)
from src.utils.vector_math import cosine_similarities, from_blob, to_blob


# ======================================================================
# Vector math
# ======================================================================


class TestCosineSimilarities:
    def test_identical_and_orthogonal(self) -> None:
        matrix = np.asarray([[1.0, 0.0], [0.0, 1.0]], dtype=np.float32)
        sims = cosine_similarities(matrix, [1.0, 0.0])
        assert sims[0] == pytest.approx(1.0)
        assert sims[1] == pytest.approx(0.0)

    def test_negative_similarity_clipped_to_zero(self) -> None:
        matrix = np.asarray([[-1.0, 0.0]], dtype=np.float32)
        assert cosine_similarities(matrix, [1.0, 0.0])[0] == 0.0

    def test_zero_norm_scores_zero(self) -> None:
        matrix = np.asarray([[0.0, 0.0], [1.0, 1.0]], dtype=np.float32)
        sims = cosine_similarities(matrix, [1.0, 1.0])
        assert sims[0] == 0.0
        assert sims[1] == pytest.approx(1.0)
        assert all(s == 0.0 for s in cosine_similarities(matrix, [0.0, 0.0]))

    def test_empty_matrix(self) -> None:
        assert cosine_similarities(np.zeros((0, 3), dtype=np.float32), [1.0, 0.0, 0.0]).size == 0

    def test_blob_is_float32(self) -> None:
        blob = to_blob([0.5, -1.25, 2.0])
        assert len(blob) == 12
        assert from_blob(blob) == [0.5, -1.25, 2.0]


# ======================================================================
# Concurrency
# ======================================================================


class TestThrottledGather:
    @pytest.mark.asyncio
    async def test_bounds_concurrency_and_keeps_order(self) -> None:
        in_flight = 0
        peak = 0

        async def work(i: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return i * 2

        results = await throttled_gather(
            [work(i) for i in range(6)], semaphore=asyncio.Semaphore(2)
        )
        assert results == [0, 2, 4, 6, 8, 10]
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_returns_exceptions_in_place(self) -> None:
        async def ok() -> str:
            return "ok"

        async def boom() -> str:
            raise ValueError("bad")

        results = await throttled_gather([ok(), boom(), ok()])
        assert results[0] == "ok"
        assert isinstance(results[1], ValueError)
        assert results[2] == "ok"


class TestKeyedLocks:
    def test_same_key_same_lock(self) -> None:
        locks = KeyedLocks()
        assert locks.get("agent-a") is locks.get("agent-a")
        assert locks.get("agent-a") is not locks.get("agent-b")
        assert len(locks) == 2


# ======================================================================
# Errors
# ======================================================================


class TestErrors:
    def test_str_prefixes_provider(self) -> None:
        err = AgentRAGError("Rate limit exceeded", provider_name="openai")
        assert str(err) == "[openai] Rate limit exceeded"
        assert err.message == "Rate limit exceeded"

    def test_validation_error_lists_every_problem(self) -> None:
        err = ValidationError(errors=["query: must not be empty", "agent_id: must not be empty"])
        assert err.errors == ["query: must not be empty", "agent_id: must not be empty"]
        assert "query: must not be empty" in err.message
        assert "agent_id: must not be empty" in err.message

    def test_transient_flags(self) -> None:
        assert RateLimitError(retry_after=2.0).transient is True
        assert LLMError("bad request").transient is False
        assert isinstance(LLMError(), UpstreamProviderError)

    def test_ingestion_phase_error_carries_phase(self) -> None:
        err = IngestionPhaseError("boom", phase="embedding", job_id="job-1")
        assert err.phase == "embedding"
        assert err.job_id == "job-1"
