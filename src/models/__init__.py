"""agent-rag domain models -- re-exports all public model classes.

The models are organized by concern:
    - source.py        -- Source documents and ingestion requests
    - rag.py           -- Chunks, embeddings, retrieval hits, ingestion summaries
    - query.py         -- Processed queries, search filters, context bundles
    - agent_config.py  -- Validated per-agent RAG configuration and templates
    - cache.py         -- Response cache entries and statistics
    - llm.py           -- LLM completions, generation options and streaming events
    - pipeline.py      -- Orchestrator stages, requests and results
    - training.py      -- Training job lifecycle
    - usage.py         -- Token usage and append-only billing records
"""

from __future__ import annotations

from src.models.agent_config import (
    AgentRAGConfig,
    PerformanceSettings,
    ResponseSettings,
    SearchWeights,
)
from src.models.cache import CacheEntry, CacheMetadata, CacheStats, TopQuery
from src.models.llm import (
    GenerationOptions,
    LLMCompletion,
    StreamDelta,
    StreamEvent,
    StreamEventType,
)
from src.models.pipeline import (
    PerformanceMetrics,
    RAGRequest,
    RAGResult,
    RAGStage,
    StageError,
)
from src.models.query import (
    CitedSource,
    ContextBundle,
    ProcessedQuery,
    QueryIntent,
    RankedChunk,
    RankingOptions,
    SearchFilters,
    SourceAttribution,
)
from src.models.rag import (
    Chunk,
    ChunkMetadata,
    Complexity,
    ContentStructure,
    CorpusStats,
    Embedding,
    IngestionResult,
    RetrievedChunk,
)
from src.models.source import (
    CompressionMetadata,
    IngestRequest,
    Source,
    SourceStatus,
    SourceType,
)
from src.models.training import JobStatus, TrainingJob
from src.models.usage import (
    TokenUsage,
    UsageMetrics,
    UsageOperation,
    UsageRecord,
    UsageTotals,
)

__all__ = [
    # agent_config
    "AgentRAGConfig",
    "PerformanceSettings",
    "ResponseSettings",
    "SearchWeights",
    # cache
    "CacheEntry",
    "CacheMetadata",
    "CacheStats",
    "TopQuery",
    # llm
    "GenerationOptions",
    "LLMCompletion",
    "StreamDelta",
    "StreamEvent",
    "StreamEventType",
    # pipeline
    "PerformanceMetrics",
    "RAGRequest",
    "RAGResult",
    "RAGStage",
    "StageError",
    # query
    "CitedSource",
    "ContextBundle",
    "ProcessedQuery",
    "QueryIntent",
    "RankedChunk",
    "RankingOptions",
    "SearchFilters",
    "SourceAttribution",
    # rag
    "Chunk",
    "ChunkMetadata",
    "Complexity",
    "ContentStructure",
    "CorpusStats",
    "Embedding",
    "IngestionResult",
    "RetrievedChunk",
    # source
    "CompressionMetadata",
    "IngestRequest",
    "Source",
    "SourceStatus",
    "SourceType",
    # training
    "JobStatus",
    "TrainingJob",
    # usage
    "TokenUsage",
    "UsageOperation",
    "UsageMetrics",
    "UsageRecord",
    "UsageTotals",
]
