"""Training job progress tracking with callback-based listener notification.

Keeps the latest :class:`TrainingJob` snapshot for each job and broadcasts
every update to the listeners registered for that job.  Listeners are keyed
by job ID so concurrent ingestion runs do not see each other's updates.

The ingestion service is the only writer::

    IngestionService --update(job)--> ProgressTracker --callback(job)--> SSE / CLI / tests

Listener errors are caught and logged so a broken listener cannot stall
ingestion.  Both sync and async callbacks are accepted.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from src.models.training import TrainingJob
from src.utils.logging import get_logger


class ProgressTracker:
    """Tracks and broadcasts training job progress via callbacks."""

    def __init__(self) -> None:
        self._jobs: dict[str, TrainingJob] = {}
        self._listeners: dict[str, list[Callable]] = {}
        self._global_listeners: list[Callable] = []
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def update(self, job: TrainingJob) -> None:
        """Record *job* as the latest snapshot and notify its listeners."""
        self._jobs[job.id] = job
        self._logger.debug(
            "job_progress",
            job_id=job.id,
            agent_id=job.agent_id,
            status=job.status.value,
            progress=round(job.progress * 100, 1),
            processed_chunks=job.processed_chunks,
        )
        await self._notify(job)

    def register_listener(self, job_id: str | None, callback: Callable) -> None:
        """Register *callback* for one job, or for every job when *job_id* is None.

        The callback receives the updated :class:`TrainingJob`.
        """
        listeners = (
            self._global_listeners
            if job_id is None
            else self._listeners.setdefault(job_id, [])
        )
        if callback not in listeners:
            listeners.append(callback)

    def unregister_listener(self, job_id: str | None, callback: Callable) -> None:
        listeners = self._global_listeners if job_id is None else self._listeners.get(job_id, [])
        if callback in listeners:
            listeners.remove(callback)

    def get_job(self, job_id: str) -> TrainingJob | None:
        return self._jobs.get(job_id)

    def get_status(self, job_id: str) -> dict:
        """Return a JSON-ready progress summary for *job_id*.

        Unknown jobs report ``status="unknown"`` and zero progress.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return {"job_id": job_id, "status": "unknown", "progress": 0.0}
        return {
            "job_id": job.id,
            "status": job.status.value,
            "progress": round(job.progress * 100, 1),
            "processed_sources": job.processed_sources,
            "total_sources": job.total_sources,
            "processed_chunks": job.processed_chunks,
            "failed_chunks": job.failed_chunks,
            "error": job.error,
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _notify(self, job: TrainingJob) -> None:
        for callback in [*self._listeners.get(job.id, []), *self._global_listeners]:
            try:
                result = callback(job)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                self._logger.warning(
                    "listener_callback_error",
                    job_id=job.id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )
        if job.is_terminal:
            self._listeners.pop(job.id, None)
