"""Public interface definitions for all external services.

Every external API or storage backend in agent-rag is accessed exclusively
through the abstract base classes defined in this package.  Concrete
adapters implement these interfaces and are injected at runtime.

ADAPTER PATTERN:
    Instead of calling ``openai.chat.completions.create(...)`` directly,
    services call ``llm_provider.complete(...)`` where ``llm_provider`` is
    any object implementing ``ILLMProvider``.  This means:
        - Swapping OpenAI for Anthropic changes one registration in main.py.
        - Unit tests inject fake providers without real API calls.
        - The LLM router can fall back between providers.

CONCRETE PROVIDER MAP:
    Interface                  ->  Concrete implementations (in src/providers/)
    ---------------------------------------------------------------------
    ILLMProvider               ->  OpenAILLMProvider, AnthropicLLMProvider,
                                   OllamaLLMProvider
    IEmbeddingProvider         ->  OpenAIEmbeddingProvider, NomicEmbeddingProvider
    ICacheProvider             ->  MemoryCacheProvider
    IKnowledgeStore            ->  MemoryKnowledgeStore, SQLiteKnowledgeStore
"""

from src.interfaces.cache_provider import ICacheProvider
from src.interfaces.embedding_provider import EmbeddingBatch, IEmbeddingProvider
from src.interfaces.knowledge_store import IKnowledgeStore
from src.interfaces.llm_provider import ILLMProvider

__all__ = [
    "EmbeddingBatch",
    "ICacheProvider",
    "IEmbeddingProvider",
    "IKnowledgeStore",
    "ILLMProvider",
]
