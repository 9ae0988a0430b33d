"""Query-time retrieval: preprocessing, search and context ranking."""

from src.services.query.context_ranker import ContextRanker
from src.services.query.query_engine import QueryEngine
from src.services.query.query_preprocessor import QueryPreprocessor

__all__ = ["ContextRanker", "QueryEngine", "QueryPreprocessor"]
