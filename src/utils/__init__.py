"""Utility modules for agent-rag.

- **errors** -- Domain exception hierarchy rooted at AgentRAGError.
- **concurrency** -- semaphore-throttled gather and per-key asyncio locks.
- **logging** -- structlog setup with console/JSON dual rendering.
- **text_normalizer** -- token estimation, sentence splitting, cleaning,
  summaries and keywords.
"""

from src.utils.concurrency import KeyedLocks, throttled_gather
from src.utils.errors import (
    AgentRAGError,
    CacheUnavailable,
    ConfigurationError,
    EmbeddingError,
    IngestionPhaseError,
    LLMError,
    RateLimitError,
    RetrievalDegraded,
    StoreError,
    UpstreamProviderError,
    ValidationError,
)
from src.utils.logging import configure_logging, get_logger
from src.utils.text_normalizer import estimate_tokens, split_sentences

__all__ = [
    "AgentRAGError",
    "CacheUnavailable",
    "ConfigurationError",
    "EmbeddingError",
    "IngestionPhaseError",
    "KeyedLocks",
    "LLMError",
    "RateLimitError",
    "RetrievalDegraded",
    "StoreError",
    "UpstreamProviderError",
    "ValidationError",
    "configure_logging",
    "estimate_tokens",
    "get_logger",
    "split_sentences",
    "throttled_gather",
]
