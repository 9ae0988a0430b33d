"""Text normalization helpers shared by ingestion and query processing.

This module handles four concerns:

1. **Token estimation** -- a fixed 4-characters-per-token approximation.
   Counts are estimates, never exact; nothing here depends on a tokenizer.

2. **Segmentation** -- paragraph and abbreviation-aware sentence splitting
   used by the semantic chunker and sentence-level deduplication.

3. **Cleaning** -- whitespace normalization and removal of call-to-action
   boilerplate lines ("Click here", "Subscribe", "Advertisement") that
   crawled pages carry into every chunk.

4. **Summaries and keywords** -- short extractive summaries and
   frequency-ranked keyword lists stored on each source.
"""

from __future__ import annotations

import math
import re
from collections import Counter

CHARS_PER_TOKEN = 4

# Common abbreviations that should NOT trigger a sentence split.
_ABBREVIATIONS = (
    "Dr", "Mr", "Mrs", "Ms", "Prof", "Jr", "Sr", "St", "Ave", "Blvd", "Vol",
    "No", "vs", "etc", "approx", "dept", "est", "govt", "inc", "ltd", "Inc",
    "Ltd", "Co", "e\\.g", "i\\.e",
)
_ABBREVIATION_RE = re.compile(r"\b(" + "|".join(_ABBREVIATIONS) + r")\.")
_SENTENCE_END_RE = re.compile(r"[.!?]+(?:[\"')\]]+)?(?:\s|$)")
_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_WORD_RE = re.compile(r"[a-z][a-z0-9'-]*")

# Lines made only of a call-to-action or ad marker are dropped entirely.
_BOILERPLATE_LINE_RE = re.compile(
    r"^\s*(advertisement|sponsored( content)?|promo(ted)?|ad|click here|read more|"
    r"learn more|subscribe( now)?|sign up( now)?|share this|skip to (main )?content)"
    r"\s*[:!.>»→-]*\s*$",
    re.IGNORECASE,
)

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "up", "about", "into", "through", "during",
        "before", "after", "above", "below", "between", "among", "is", "are",
        "was", "were", "be", "been", "being", "have", "has", "had", "do",
        "does", "did", "will", "would", "could", "should", "may", "might",
        "must", "can", "this", "that", "these", "those", "i", "you", "he",
        "she", "it", "we", "they", "me", "him", "her", "us", "them", "my",
        "your", "his", "its", "our", "their", "what", "which", "who", "when",
        "where", "why", "how", "all", "any", "both", "each", "few", "more",
        "most", "other", "some", "such", "no", "nor", "not", "only", "own",
        "same", "so", "than", "too", "very", "just", "also", "there", "here",
        "then", "them", "well", "into", "over", "under", "again", "please",
        "tell", "know", "want", "need", "like", "get", "got",
    }
)


# ------------------------------------------------------------------
# Token estimation
# ------------------------------------------------------------------


def estimate_tokens(text: str) -> int:
    """Estimate the token count of *text* as ``ceil(len / 4)``.

    This is an approximation for budgeting only; real tokenizers differ by
    model and language.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut *text* to at most *max_tokens* estimated tokens, on a word boundary."""
    limit = max_tokens * CHARS_PER_TOKEN
    if len(text) <= limit:
        return text
    cut = text[:limit]
    space = cut.rfind(" ")
    if space > limit // 2:
        cut = cut[:space]
    return cut.rstrip()


# ------------------------------------------------------------------
# Segmentation
# ------------------------------------------------------------------


def split_paragraphs(text: str) -> list[str]:
    """Split *text* on blank lines, discarding empty parts."""
    return [p.strip() for p in _PARAGRAPH_RE.split(text) if p.strip()]


def split_sentences(text: str) -> list[str]:
    """Split *text* at sentence boundaries while respecting abbreviations.

    Periods after known abbreviations are masked with ``\\x00`` (same
    length, so indices stay aligned with the original) before matching
    ``.``, ``!`` or ``?`` followed by whitespace or end-of-string.
    """
    if not text or not text.strip():
        return []
    masked = _ABBREVIATION_RE.sub(lambda m: m.group(0)[:-1] + "\x00", text)

    sentences: list[str] = []
    last = 0
    for match in _SENTENCE_END_RE.finditer(masked):
        end = match.end()
        sentence = text[last:end].strip()
        if sentence:
            sentences.append(sentence)
        last = end

    remainder = text[last:].strip()
    if remainder:
        sentences.append(remainder)
    return sentences


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces/tabs and keep at most one blank line between paragraphs."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t\f\v\u00a0]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def normalize_for_hash(text: str) -> str:
    """Trim, lowercase and collapse all whitespace; the input to content hashes."""
    return re.sub(r"\s+", " ", text.strip().lower())


# ------------------------------------------------------------------
# Cleaning
# ------------------------------------------------------------------


def clean_for_chunking(text: str) -> str:
    """Remove boilerplate lines and excessive punctuation before chunking."""
    lines = [
        line for line in text.replace("\r\n", "\n").split("\n")
        if not _BOILERPLATE_LINE_RE.match(line)
    ]
    cleaned = "\n".join(lines)
    cleaned = re.sub(r"\.{3,}", "...", cleaned)
    cleaned = re.sub(r"!{2,}", "!", cleaned)
    cleaned = re.sub(r"\?{2,}", "?", cleaned)
    return normalize_whitespace(cleaned)


# ------------------------------------------------------------------
# Summaries and keywords
# ------------------------------------------------------------------


def tokenize_words(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


def extract_keywords(text: str, limit: int = 10, min_length: int = 4) -> list[str]:
    """Return the *limit* most frequent non-stopword words of at least *min_length* chars.

    Ties keep first-occurrence order so results are deterministic.
    """
    words = [w.strip("'-") for w in tokenize_words(text)]
    counts = Counter(w for w in words if len(w) >= min_length and w not in STOPWORDS)
    return [word for word, _ in counts.most_common(limit)]


def summarize(text: str, max_sentences: int = 3, max_chars: int = 200) -> str:
    """Build an extractive summary from the first meaningful sentences."""
    sentences = [s for s in split_sentences(normalize_whitespace(text)) if len(s) > 20]
    summary = " ".join(sentences[:max_sentences])
    if not summary:
        summary = normalize_whitespace(text)
    if len(summary) > max_chars:
        return summary[:max_chars].rstrip() + "..."
    return summary


def make_excerpt(text: str, max_chars: int = 200) -> str:
    """First *max_chars* characters of *text*, cut on a word boundary."""
    flat = re.sub(r"\s+", " ", text).strip()
    if len(flat) <= max_chars:
        return flat
    cut = flat[:max_chars]
    space = cut.rfind(" ")
    if space > max_chars // 2:
        cut = cut[:space]
    return cut.rstrip(" ,;:") + "..."


def keyword_overlap(text: str, keywords: list[str]) -> float:
    """Fraction of *keywords* that occur in *text* as whole words."""
    terms = [k.lower() for k in keywords if k.strip()]
    if not terms:
        return 0.0
    words = set(tokenize_words(text))
    return sum(1 for term in terms if term in words) / len(terms)
