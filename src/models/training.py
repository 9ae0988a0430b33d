"""Training job model.

A :class:`TrainingJob` tracks one long-running ingestion run over a set of
sources.  Status only moves forward::

    PENDING -> IN_PROGRESS -> COMPLETED
                           -> FAILED
    PENDING -> FAILED

A finished job is never resurrected; a retry creates a new job.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.utils.errors import ValidationError


class JobStatus(str, Enum):  # noqa: UP042
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.IN_PROGRESS, JobStatus.FAILED}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class TrainingJob(BaseModel):
    """Progress of an ingestion run for a set of sources."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    agent_id: str
    status: JobStatus = JobStatus.PENDING
    total_sources: int = Field(default=0, ge=0)
    processed_sources: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=0, ge=0)
    processed_chunks: int = Field(default=0, ge=0)
    failed_chunks: int = Field(default=0, ge=0)
    failed_phase: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def progress(self) -> float:
        """Fraction of sources processed, 0.0-1.0."""
        if self.total_sources == 0:
            return 1.0 if self.status == JobStatus.COMPLETED else 0.0
        return min(1.0, self.processed_sources / self.total_sources)

    def transition(self, status: JobStatus, **updates: object) -> TrainingJob:
        """Return a copy moved to *status*.

        Raises
        ------
        ValidationError
            If the move is not a forward transition.
        """
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValidationError(
                message=f"Illegal job transition {self.status.value} -> {status.value}",
                errors=[f"job {self.id}: {self.status.value} -> {status.value}"],
            )
        now = datetime.now(tz=timezone.utc)  # noqa: UP017
        update: dict[str, object] = {"status": status, **updates}
        if status == JobStatus.IN_PROGRESS:
            update.setdefault("started_at", now)
        if status in (JobStatus.COMPLETED, JobStatus.FAILED):
            update.setdefault("completed_at", now)
        return self.model_copy(update=update)
