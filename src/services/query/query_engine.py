"""Query-time retrieval: preprocess, embed, search, merge and rank.

The engine is the read side of the knowledge base.  For one user query it:

    1. PREPROCESS -- normalize the query and extract keywords.
    2. EMBED -- embed the normalized query through the embedding router.
    3. SEMANTIC SEARCH -- cosine search over the agent's active,
       non-duplicate chunks embedded with the same model.
    4. KEYWORD SEARCH -- whole-word match on the extracted keywords; hits
       whose keyword share is under the relevance floor are dropped.
    5. MERGE -- union both hit lists; a chunk found by both keeps its
       semantic hit.
    6. RANK -- blend the signals and prune to the token budget.
"""

from __future__ import annotations

import structlog

from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.agent_config import AgentRAGConfig
from src.models.query import ContextBundle, ProcessedQuery, RankingOptions, SearchFilters
from src.models.rag import RetrievedChunk
from src.services.embedding_router import EmbeddingRouter
from src.services.query.context_ranker import ContextRanker
from src.services.query.query_preprocessor import QueryPreprocessor

logger = structlog.get_logger(logger_name=__name__)


class QueryEngine:
    """Retrieves a ranked :class:`ContextBundle` for a user query.

    Errors from the embedding provider or the store propagate; the
    orchestrator decides whether to degrade.
    """

    def __init__(
        self,
        store: IKnowledgeStore,
        embedding_router: EmbeddingRouter,
        preprocessor: QueryPreprocessor | None = None,
        ranker: ContextRanker | None = None,
    ) -> None:
        self._store = store
        self._embeddings = embedding_router
        self._preprocessor = preprocessor or QueryPreprocessor()
        self._ranker = ranker or ContextRanker()

    @property
    def preprocessor(self) -> QueryPreprocessor:
        return self._preprocessor

    async def retrieve(
        self,
        query: str,
        agent_id: str,
        config: AgentRAGConfig | None = None,
    ) -> ContextBundle:
        """Return the ranked, token-bounded context for *query*."""
        cfg = config or AgentRAGConfig()
        processed = self._preprocessor.process(query)
        if not processed.normalized:
            return ContextBundle()

        filters = self.build_filters(cfg)
        semantic = await self._semantic_hits(processed, agent_id, filters)
        keyword: list[RetrievedChunk] = []
        if processed.keywords:
            keyword = await self._store.keyword_search(agent_id, processed.keywords, filters)

        candidates = self.merge(semantic, keyword)
        bundle = self._ranker.rank(candidates, processed, self.ranking_options(cfg))
        logger.info(
            "context_retrieved",
            agent_id=agent_id,
            intent=processed.intent.value,
            semantic_hits=len(semantic),
            keyword_hits=len(keyword),
            chunks=len(bundle.chunks),
            total_tokens=bundle.total_tokens,
        )
        return bundle

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def build_filters(config: AgentRAGConfig) -> SearchFilters:
        return SearchFilters(
            source_types=config.source_types,
            min_similarity=config.min_relevance_score,
            max_results=config.max_sources,
        )

    @staticmethod
    def ranking_options(config: AgentRAGConfig) -> RankingOptions:
        return RankingOptions(
            max_chunks=config.context_window,
            max_tokens=config.performance.context_max_tokens,
            weights=config.search_weights,
        )

    @staticmethod
    def merge(
        semantic: list[RetrievedChunk], keyword: list[RetrievedChunk]
    ) -> list[RetrievedChunk]:
        """Union of both hit lists by chunk id, semantic hits first."""
        merged: dict[str, RetrievedChunk] = {}
        for hit in [*semantic, *keyword]:
            merged.setdefault(hit.chunk.id, hit)
        return list(merged.values())

    async def _semantic_hits(
        self, processed: ProcessedQuery, agent_id: str, filters: SearchFilters
    ) -> list[RetrievedChunk]:
        embedded = await self._embeddings.embed(processed.normalized, agent_id=agent_id)
        return await self._store.similarity_search(
            agent_id, embedded.vector, filters, model=embedded.model
        )
