"""Answer generation: provider routing, streaming and post-processing."""

from src.services.llm.llm_router import LLMRouter, build_rag_prompt
from src.services.llm.post_processor import (
    ProcessedResponse,
    ResponsePostProcessor,
    StreamSafetyFilter,
)
from src.services.llm.streaming import CancellationToken, StreamingHandler

__all__ = [
    "CancellationToken",
    "LLMRouter",
    "ProcessedResponse",
    "ResponsePostProcessor",
    "StreamSafetyFilter",
    "StreamingHandler",
    "build_rag_prompt",
]
