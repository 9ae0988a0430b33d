"""Knowledge store implementations.

    - MemoryKnowledgeStore -- dicts plus numpy cosine similarity; tests and
      single-process development.
    - SQLiteKnowledgeStore -- aiosqlite with float32 vector blobs; durable
      local deployments.
"""

from src.providers.store.memory_store import MemoryKnowledgeStore
from src.providers.store.sqlite_store import SQLiteKnowledgeStore

__all__ = ["MemoryKnowledgeStore", "SQLiteKnowledgeStore"]
