"""Content analysis and archival compression for ingested sources.

Two jobs live here:

**Analysis** -- :meth:`CompressionEngine.analyze` classifies text as
informational, content-rich, template or mixed from its unique-word ratio
and repeated/boilerplate sentences; :meth:`select_processing_mode` turns
that into one of three ingestion modes:

    SUMMARY           small or informational text; stored as one chunk,
                      chunking is skipped
    TEMPLATE_REMOVAL  boilerplate ratio above 0.3; repeated and template
                      sentences are stripped before chunking
    CHUNKING          everything else

**Compression** -- raw content is archived through an ordered strategy
list, first success wins:

    deflate-dict  zlib with a preset dictionary of common English and
                  web-boilerplate tokens, built once at import
    rle           escape-byte run-length encoding
    none          stored as-is, ratio 1.0

A strategy that raises, or whose output is not smaller than its input, is
skipped and the next one is tried.  ``none`` cannot fail, so compression
never blocks ingestion.
"""

from __future__ import annotations

import re
import zlib
from abc import ABC, abstractmethod
from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.utils.text_normalizer import normalize_for_hash, split_sentences, tokenize_words

logger = structlog.get_logger(logger_name=__name__)

# Fixed upper bound on bytes a compressed payload may exceed its input by.
# The cascade never returns a larger payload, so the bound is not reached.
MAX_OVERHEAD_BYTES = 16

_COMMON_TOKENS = (
    "the", "and", "that", "have", "for", "not", "with", "you", "this", "but",
    "his", "from", "they", "say", "her", "she", "will", "one", "all", "would",
    "there", "their", "what", "out", "about", "who", "get", "which", "when",
    "make", "can", "like", "time", "just", "him", "know", "take", "people",
    "into", "year", "your", "good", "some", "could", "them", "see", "other",
    "than", "then", "now", "look", "only", "come", "its", "over", "think",
    "also", "back", "after", "use", "two", "how", "our", "work", "first",
    "well", "way", "even", "new", "want", "because", "any", "these", "give",
    "day", "most", "information", "product", "service", "customer", "support",
    "contact us", "privacy policy", "terms of service", "cookie policy",
    "all rights reserved", "copyright", "learn more", "read more", "click here",
    "sign up", "subscribe", "newsletter", "follow us", "home", "about us",
    "pricing", "features", "frequently asked questions", "please", "email",
    " of the ", " in the ", " to the ", " and the ", " on the ", " for the ",
    "tion", "ment", "ing ", "ed ", ". The ", ", and ", ". ", ", ",
)

_DICTIONARY: bytes = " ".join(_COMMON_TOKENS).encode("utf-8")

_TEMPLATE_PHRASES = re.compile(
    r"(privacy policy|terms of (service|use)|cookie policy|all rights reserved|"
    r"copyright \d{4}|powered by \w+|subscribe to our newsletter|"
    r"follow us on|skip to (main )?content|accept (all )?cookies)",
    re.IGNORECASE,
)

_BOILERPLATE_THRESHOLD = 0.3
_SUMMARY_MAX_CHARS = 2000
_INFORMATIONAL_SUMMARY_MAX_CHARS = 3000


class ContentType(str, Enum):  # noqa: UP042
    INFORMATIONAL = "informational"
    CONTENT_RICH = "content-rich"
    TEMPLATE = "template"
    MIXED = "mixed"


class ProcessingMode(str, Enum):  # noqa: UP042
    SUMMARY = "summary"
    CHUNKING = "chunking"
    TEMPLATE_REMOVAL = "template-removal"


class ContentAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    content_type: ContentType
    density: float = Field(ge=0.0, le=1.0)
    boilerplate_ratio: float = Field(ge=0.0, le=1.0)
    unique_word_ratio: float = Field(ge=0.0, le=1.0)
    word_count: int = Field(ge=0)
    sentence_count: int = Field(ge=0)


class CompressionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    compressed: bytes
    original_size: int
    compressed_size: int
    ratio: float
    method: str
    attempts: list[str] = Field(
        default_factory=list,
        description="Strategies tried in order, with the outcome of each.",
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class CompressionStrategy(ABC):
    """One lossless compression method in the fallback cascade."""

    name: str = ""

    @abstractmethod
    def compress(self, data: bytes) -> bytes: ...

    @abstractmethod
    def decompress(self, data: bytes) -> bytes: ...


class DictionaryDeflateStrategy(CompressionStrategy):
    """zlib deflate primed with a preset dictionary of common tokens."""

    name = "deflate-dict"

    def __init__(self, dictionary: bytes = _DICTIONARY, level: int = 9) -> None:
        self._dictionary = dictionary
        self._level = level

    def compress(self, data: bytes) -> bytes:
        compressor = zlib.compressobj(level=self._level, zdict=self._dictionary)
        return compressor.compress(data) + compressor.flush()

    def decompress(self, data: bytes) -> bytes:
        decompressor = zlib.decompressobj(zdict=self._dictionary)
        return decompressor.decompress(data) + decompressor.flush()


class RunLengthStrategy(CompressionStrategy):
    """Run-length encoding with an escape byte.

    Runs of ``min_run`` or more identical bytes, and every literal
    occurrence of the escape byte, are written as ``ESC byte count``
    (count 1-255).  Other bytes are copied through.
    """

    name = "rle"
    ESCAPE = 0xFE

    def __init__(self, min_run: int = 4) -> None:
        self._min_run = min_run

    def compress(self, data: bytes) -> bytes:
        out = bytearray()
        i = 0
        n = len(data)
        while i < n:
            byte = data[i]
            run = 1
            while i + run < n and data[i + run] == byte and run < 255:
                run += 1
            if run >= self._min_run or byte == self.ESCAPE:
                out.extend((self.ESCAPE, byte, run))
            else:
                out.extend(data[i : i + run])
            i += run
        return bytes(out)

    def decompress(self, data: bytes) -> bytes:
        out = bytearray()
        i = 0
        n = len(data)
        while i < n:
            byte = data[i]
            if byte == self.ESCAPE:
                if i + 2 >= n:
                    raise ValueError("truncated run-length sequence")
                out.extend(bytes((data[i + 1],)) * data[i + 2])
                i += 3
            else:
                out.append(byte)
                i += 1
        return bytes(out)


class PassThroughStrategy(CompressionStrategy):
    name = "none"

    def compress(self, data: bytes) -> bytes:
        return data

    def decompress(self, data: bytes) -> bytes:
        return data


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class CompressionEngine:
    """Analyzes content and archives it with the best available strategy.

    Parameters
    ----------
    strategies:
        Ordered cascade.  Defaults to deflate-dict -> rle -> none.  A
        pass-through strategy is appended when the list lacks one.
    verify:
        Decompress each candidate and compare with the input before
        accepting it.
    """

    def __init__(
        self,
        strategies: list[CompressionStrategy] | None = None,
        verify: bool = True,
    ) -> None:
        chain = list(strategies) if strategies is not None else [
            DictionaryDeflateStrategy(),
            RunLengthStrategy(),
        ]
        if not any(isinstance(s, PassThroughStrategy) for s in chain):
            chain.append(PassThroughStrategy())
        self._strategies = chain
        self._by_name = {s.name: s for s in chain}
        self._verify = verify

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self._strategies]

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(self, text: str) -> ContentAnalysis:
        """Classify *text* by density and boilerplate share."""
        words = tokenize_words(text)
        sentences = split_sentences(text)
        word_count = len(words)
        unique_ratio = len(set(words)) / word_count if word_count else 0.0

        seen: set[str] = set()
        boilerplate = 0
        for sentence in sentences:
            key = normalize_for_hash(sentence)
            if key in seen or _TEMPLATE_PHRASES.search(sentence):
                boilerplate += 1
            seen.add(key)
        boilerplate_ratio = boilerplate / len(sentences) if sentences else 0.0

        if boilerplate_ratio > _BOILERPLATE_THRESHOLD:
            content_type = ContentType.TEMPLATE
        elif word_count < 300 and unique_ratio >= 0.5:
            content_type = ContentType.INFORMATIONAL
        elif unique_ratio >= 0.35:
            content_type = ContentType.CONTENT_RICH
        else:
            content_type = ContentType.MIXED

        return ContentAnalysis(
            content_type=content_type,
            density=round(unique_ratio, 4),
            boilerplate_ratio=round(min(1.0, boilerplate_ratio), 4),
            unique_word_ratio=round(unique_ratio, 4),
            word_count=word_count,
            sentence_count=len(sentences),
        )

    @staticmethod
    def select_processing_mode(analysis: ContentAnalysis, size: int) -> ProcessingMode:
        """Choose how a source of *size* characters is ingested."""
        if size < _SUMMARY_MAX_CHARS:
            return ProcessingMode.SUMMARY
        if (
            analysis.content_type == ContentType.INFORMATIONAL
            and size < _INFORMATIONAL_SUMMARY_MAX_CHARS
        ):
            return ProcessingMode.SUMMARY
        if analysis.boilerplate_ratio > _BOILERPLATE_THRESHOLD:
            return ProcessingMode.TEMPLATE_REMOVAL
        return ProcessingMode.CHUNKING

    @staticmethod
    def remove_template(text: str) -> str:
        """Drop repeated sentences and template phrases, keeping paragraph breaks."""
        seen: set[str] = set()
        paragraphs: list[str] = []
        for paragraph in re.split(r"\n\s*\n", text):
            kept: list[str] = []
            for sentence in split_sentences(paragraph):
                key = normalize_for_hash(sentence)
                if key in seen or _TEMPLATE_PHRASES.search(sentence):
                    continue
                seen.add(key)
                kept.append(sentence)
            if kept:
                paragraphs.append(" ".join(kept))
        return "\n\n".join(paragraphs)

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    def compress(self, data: bytes | str) -> CompressionResult:
        """Compress *data* with the first strategy that succeeds and saves space."""
        raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        original_size = len(raw)
        attempts: list[str] = []

        for strategy in self._strategies:
            if isinstance(strategy, PassThroughStrategy):
                break
            try:
                candidate = strategy.compress(raw)
                if self._verify and strategy.decompress(candidate) != raw:
                    attempts.append(f"{strategy.name}:mismatch")
                    continue
            except Exception as exc:  # noqa: BLE001
                logger.warning("compression_strategy_failed", method=strategy.name, error=str(exc))
                attempts.append(f"{strategy.name}:error")
                continue
            if len(candidate) >= original_size:
                attempts.append(f"{strategy.name}:no_gain")
                continue
            attempts.append(f"{strategy.name}:ok")
            result = CompressionResult(
                compressed=candidate,
                original_size=original_size,
                compressed_size=len(candidate),
                ratio=round(len(candidate) / original_size, 4),
                method=strategy.name,
                attempts=attempts,
            )
            logger.debug(
                "content_compressed",
                method=result.method,
                original_size=original_size,
                compressed_size=result.compressed_size,
            )
            return result

        attempts.append("none:ok")
        return CompressionResult(
            compressed=raw,
            original_size=original_size,
            compressed_size=original_size,
            ratio=1.0,
            method=PassThroughStrategy.name,
            attempts=attempts,
        )

    def decompress(self, data: bytes | CompressionResult, method: str | None = None) -> bytes:
        """Reverse :meth:`compress`.

        Raises
        ------
        ValueError
            If *method* names no registered strategy.
        """
        if isinstance(data, CompressionResult):
            method = method or data.method
            payload = data.compressed
        else:
            payload = data
        strategy = self._by_name.get(method or PassThroughStrategy.name)
        if strategy is None:
            raise ValueError(f"Unknown compression method: {method}")
        return strategy.decompress(payload)

    def decompress_text(self, data: bytes | CompressionResult, method: str | None = None) -> str:
        return self.decompress(data, method).decode("utf-8")

