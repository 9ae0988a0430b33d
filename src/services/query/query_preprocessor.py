"""User query normalization, intent detection and keyword extraction."""

from __future__ import annotations

import re

import structlog

from src.models.query import ProcessedQuery, QueryIntent
from src.utils.text_normalizer import STOPWORDS

logger = structlog.get_logger(logger_name=__name__)

_QUESTION_WORDS = frozenset({"what", "how", "why", "when", "where", "who", "which", "whose"})
_AUXILIARY_OPENERS = frozenset({"is", "are", "can", "could", "does", "do", "did", "should", "will"})
_COMMAND_WORDS = frozenset(
    {"create", "make", "build", "generate", "write", "help", "show", "list", "explain", "give"}
)
_STRIP_RE = re.compile(r"[^\w\s\-.]")
_SPACE_RE = re.compile(r"\s+")

MAX_KEYWORDS = 10


class QueryPreprocessor:
    """Turns a raw user query into a :class:`ProcessedQuery`."""

    def process(self, query: str) -> ProcessedQuery:
        """Normalize *query* and derive intent, keywords, variations and confidence.

        Intent uses the original text so that a trailing ``?`` still marks
        a question after normalization has stripped punctuation.
        """
        normalized = self.normalize(query)
        intent = self.detect_intent(query, normalized)
        keywords = self.extract_keywords(normalized)
        processed = ProcessedQuery(
            original=query,
            normalized=normalized,
            intent=intent,
            keywords=keywords,
            variations=self.generate_variations(normalized, keywords),
            confidence=self.confidence(query, normalized, keywords),
        )
        logger.debug(
            "query_preprocessed",
            intent=intent.value,
            keyword_count=len(keywords),
            confidence=processed.confidence,
        )
        return processed

    @staticmethod
    def normalize(query: str) -> str:
        """Lowercase, drop characters other than word/space/``-``/``.``, collapse spaces."""
        text = _STRIP_RE.sub(" ", query.strip().lower())
        return _SPACE_RE.sub(" ", text).strip()

    @staticmethod
    def detect_intent(original: str, normalized: str) -> QueryIntent:
        words = normalized.split()
        if not words:
            return QueryIntent.SEARCH
        first = words[0]
        if first in _QUESTION_WORDS or "?" in original:
            return QueryIntent.QUESTION
        if first in _AUXILIARY_OPENERS and len(words) > 2:
            return QueryIntent.QUESTION
        if first in _COMMAND_WORDS:
            return QueryIntent.COMMAND
        if len(words) <= 3:
            return QueryIntent.SEARCH
        return QueryIntent.CONVERSATION

    @staticmethod
    def extract_keywords(normalized: str) -> list[str]:
        """Stopword-filtered words longer than two characters, first 10, deduplicated."""
        keywords: list[str] = []
        for word in normalized.split():
            token = word.strip(".-")
            if len(token) > 2 and token not in STOPWORDS and token not in keywords:
                keywords.append(token)
            if len(keywords) >= MAX_KEYWORDS:
                break
        return keywords

    @staticmethod
    def generate_variations(normalized: str, keywords: list[str]) -> list[str]:
        """The query itself, its keywords, and the leading half of its keywords."""
        variations = [normalized] if normalized else []
        if keywords:
            variations.append(" ".join(keywords))
        if len(keywords) > 2:
            variations.append(" ".join(keywords[: (len(keywords) + 1) // 2]))
        return list(dict.fromkeys(v for v in variations if v))

    @staticmethod
    def confidence(original: str, normalized: str, keywords: list[str]) -> float:
        """Heuristic specificity of the query, 0.5-1.0 (0.0 when empty)."""
        if not normalized:
            return 0.0
        score = 0.5
        if len(normalized) > 20:
            score += 0.2
        if len(normalized) > 50:
            score += 0.1
        if len(keywords) > 3:
            score += 0.1
        if len(keywords) > 6:
            score += 0.1
        if "?" in original:
            score += 0.1
        return round(min(score, 1.0), 2)
