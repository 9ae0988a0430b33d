"""Fingerprinted cache of final answers.

The cache sits in front of retrieval and generation.  Its key is the
SHA-256 of the lowercased, stripped query, the agent id and the subset of
agent options that change an answer, so two requests that would produce
the same answer share an entry.  Entries live in an
:class:`~src.interfaces.cache_provider.ICacheProvider` (the in-memory
``TTLCache`` adapter by default) which handles capacity and expiry.

A hit re-writes the entry with an incremented ``hit_count``, which also
restarts its time-to-live and makes it most-recently-used.

The cache never fails a request: any backend exception is logged as
:class:`~src.utils.errors.CacheUnavailable` and treated as a miss (on
read) or a no-op (on write).
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

import structlog

from src.interfaces.cache_provider import ICacheProvider
from src.models.cache import CacheEntry, CacheMetadata, CacheStats, TopQuery
from src.models.query import CitedSource
from src.utils.errors import CacheUnavailable

logger = structlog.get_logger(logger_name=__name__)

_KEY_PREFIX = "rag:"


class ResponseCache:
    """Answer cache over a pluggable key-value backend."""

    def __init__(self, provider: ICacheProvider) -> None:
        self._provider = provider
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @staticmethod
    def make_key(query: str, agent_id: str, options: dict[str, Any] | None = None) -> str:
        """Return the fingerprint for *query* under *agent_id* and *options*."""
        payload = json.dumps(
            {
                "query": query.lower().strip(),
                "agent_id": agent_id,
                "options": options or {},
            },
            sort_keys=True,
            default=str,
        )
        return _KEY_PREFIX + hashlib.sha256(payload.encode("utf-8")).hexdigest()

    async def get(
        self, query: str, agent_id: str, options: dict[str, Any] | None = None
    ) -> CacheEntry | None:
        key = self.make_key(query, agent_id, options)
        try:
            entry = await self._provider.get(key)
            if not isinstance(entry, CacheEntry):
                self._misses += 1
                return None
            refreshed = entry.model_copy(
                update={
                    "metadata": entry.metadata.model_copy(
                        update={"hit_count": entry.metadata.hit_count + 1}
                    )
                }
            )
            await self._provider.set(key, refreshed)
        except Exception as exc:  # noqa: BLE001
            self._unavailable("get", exc)
            self._misses += 1
            return None

        self._hits += 1
        logger.info(
            "response_cache_hit",
            agent_id=agent_id,
            key=key[:16],
            hit_count=refreshed.metadata.hit_count,
        )
        return refreshed

    async def set(
        self,
        query: str,
        agent_id: str,
        response: str,
        sources: list[CitedSource] | None = None,
        options: dict[str, Any] | None = None,
        processing_time_ms: float = 0.0,
    ) -> None:
        key = self.make_key(query, agent_id, options)
        entry = CacheEntry(
            response=response,
            sources=list(sources or []),
            metadata=CacheMetadata(
                agent_id=agent_id,
                query_hash=key,
                processing_time_ms=processing_time_ms,
            ),
        )
        try:
            await self._provider.set(key, entry)
        except Exception as exc:  # noqa: BLE001
            self._unavailable("set", exc)
            return
        logger.debug("response_cached", agent_id=agent_id, key=key[:16], sources=len(entry.sources))

    async def invalidate(self, agent_id: str) -> int:
        """Delete every entry belonging to *agent_id*; return the count."""
        removed = 0
        try:
            for key, entry in await self._entries():
                if entry.metadata.agent_id == agent_id:
                    await self._provider.delete(key)
                    removed += 1
        except Exception as exc:  # noqa: BLE001
            self._unavailable("invalidate", exc)
        logger.info("response_cache_invalidated", agent_id=agent_id, count=removed)
        return removed

    async def clear(self) -> None:
        try:
            await self._provider.clear()
        except Exception as exc:  # noqa: BLE001
            self._unavailable("clear", exc)

    async def stats(self) -> CacheStats:
        try:
            size = len(await self._provider.keys())
        except Exception as exc:  # noqa: BLE001
            self._unavailable("stats", exc)
            size = 0
        total = self._hits + self._misses
        return CacheStats(
            size=size,
            hits=self._hits,
            misses=self._misses,
            hit_rate=round(self._hits / total, 4) if total else 0.0,
        )

    async def top_queries(self, limit: int = 10) -> list[TopQuery]:
        """Entries with the most hits, most-hit first."""
        try:
            entries = await self._entries()
        except Exception as exc:  # noqa: BLE001
            self._unavailable("top_queries", exc)
            return []
        ranked = sorted(entries, key=lambda item: item[1].metadata.hit_count, reverse=True)
        return [
            TopQuery(
                query_hash=key,
                agent_id=entry.metadata.agent_id,
                hit_count=entry.metadata.hit_count,
                last_access=entry.metadata.timestamp,
            )
            for key, entry in ranked[:limit]
        ]

    async def warmup(
        self,
        items: list[tuple[str, str, str, list[CitedSource]]],
        options: dict[str, Any] | None = None,
    ) -> int:
        """Pre-populate answers given as ``(query, agent_id, response, sources)``.

        Existing entries are left untouched.  Returns the number written.
        """
        written = 0
        for query, agent_id, response, sources in items:
            key = self.make_key(query, agent_id, options)
            try:
                if await self._provider.exists(key):
                    continue
            except Exception as exc:  # noqa: BLE001
                self._unavailable("warmup", exc)
                return written
            await self.set(query, agent_id, response, sources, options)
            written += 1
        logger.info("response_cache_warmed", requested=len(items), written=written)
        return written

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _entries(self) -> list[tuple[str, CacheEntry]]:
        out: list[tuple[str, CacheEntry]] = []
        for key in await self._provider.keys():
            if not key.startswith(_KEY_PREFIX):
                continue
            entry = await self._provider.get(key)
            if isinstance(entry, CacheEntry):
                out.append((key, entry))
        return out

    @staticmethod
    def _unavailable(operation: str, exc: Exception) -> None:
        error = CacheUnavailable(f"Response cache {operation} failed: {exc}")
        logger.warning(
            "cache_unavailable",
            operation=operation,
            error=str(error),
        )
