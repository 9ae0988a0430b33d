"""Document ingestion pipeline for the agent knowledge base.

Pipeline phases: **extract -> compress -> chunk -> deduplicate -> embed**.

1. **Extract** (content_extractor.py / ContentExtractor) -- reduces crawled
   HTML to its primary text region; plain text passes through.

2. **Compress** (compression.py / CompressionEngine) -- archives the raw
   document with the best lossless strategy and decides whether the source
   is summarized, chunked, or stripped of template text first.

3. **Chunk** (chunker.py / SemanticChunker) -- structure-aware, token-bounded
   chunks with sentence overlap and quality filtering.

4. **Deduplicate** (deduplication.py / DeduplicationEngine) -- removes
   repeated sentences and flags chunks the agent already owns.

5. **Embed** (via EmbeddingRouter) -- vectors for every non-duplicate chunk.

The IngestionService class drives all five phases per source and records a
TrainingJob for each run.
"""

from src.services.ingestion.chunker import ChunkingOptions, SemanticChunker
from src.services.ingestion.compression import CompressionEngine, ProcessingMode
from src.services.ingestion.content_extractor import ContentExtractor
from src.services.ingestion.deduplication import DeduplicationEngine
from src.services.ingestion.ingestion_service import IngestionService

__all__ = [
    "ChunkingOptions",
    "CompressionEngine",
    "ContentExtractor",
    "DeduplicationEngine",
    "IngestionService",
    "ProcessingMode",
    "SemanticChunker",
]
