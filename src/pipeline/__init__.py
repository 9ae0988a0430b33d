"""Request orchestration and training job progress tracking."""

from src.pipeline.orchestrator import FALLBACK_ANSWER, RAGOrchestrator
from src.pipeline.progress_tracker import ProgressTracker

__all__ = [
    "FALLBACK_ANSWER",
    "ProgressTracker",
    "RAGOrchestrator",
]
