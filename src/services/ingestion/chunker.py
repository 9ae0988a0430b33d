"""Structure-aware semantic chunking with dynamic sizing.

Splits cleaned source text into retrieval-sized chunks.  The chunker:

1. **Classifies** the text as code, list, table, heading-structured or plain
   paragraphs, and rates its complexity (simple / medium / complex) from
   average sentence length and paragraph count.

2. **Sizes** chunks dynamically: complex prose (x0.7) and code (x0.8)
   get smaller chunks so each embedding stays focused; simple prose (x1.3)
   and tables (x1.5) get larger ones.

3. **Splits** on the strongest boundary the structure offers -- paragraph
   breaks, list items, function/class definitions, table rows -- and falls
   back to sentences, then to hard cuts at the target size for a single
   sentence longer than the maximum.

4. **Overlaps** prose chunks: up to ``overlap_size`` tokens of trailing
   sentences are carried into the next chunk so concepts spanning a
   boundary are retrievable from either side.  Table chunks repeat the
   header row instead.

5. **Filters** degenerate chunks below the minimum token count, under 50
   characters, or with a heuristic quality score below 0.3, then numbers
   the survivors 0..N-1.

All sizes are in *estimated* tokens (4 characters per token); no tokenizer
is involved.
"""

from __future__ import annotations

import re
import statistics
from dataclasses import dataclass, replace

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.models.rag import ChunkMetadata, Complexity, ContentStructure
from src.utils.text_normalizer import (
    CHARS_PER_TOKEN,
    estimate_tokens,
    extract_keywords,
    split_paragraphs,
    split_sentences,
)

logger = structlog.get_logger(logger_name=__name__)

_CODE_LINE_RE = re.compile(
    r"^\s*(?:async\s+def\s|def\s|class\s|import\s|from\s+\S+\s+import\s|function\s|const\s|"
    r"let\s|var\s|return\b|#include|fn\s|func\s|public\s|private\s|protected\s|@\w+)"
    r"|[;{}]\s*$|^\s*[}\])]+[;,]?\s*$"
)
_CODE_BOUNDARY_RE = re.compile(
    r"^(?:async\s+def|def|class|function|export\s+(?:default\s+)?(?:async\s+)?(?:function|class)"
    r"|public|private|protected|fn|func)\b",
    re.MULTILINE,
)
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*•+]|\d+[.)])\s+")
_TABLE_ROW_RE = re.compile(r"^\s*\|?[^|\n]*\|[^|\n]*\|?|\t.*\t")
_TABLE_SEPARATOR_RE = re.compile(r"^\s*\|?\s*:?-{3,}")
_MD_HEADING_RE = re.compile(r"^#{1,6}\s+(\S.*)$")

_COMPLEXITY_FACTORS = {Complexity.COMPLEX: 0.7, Complexity.SIMPLE: 1.3}
_STRUCTURE_FACTORS = {ContentStructure.CODE: 0.8, ContentStructure.TABLE: 1.5}


class ChunkingOptions(BaseModel):
    """Chunk sizing options, in estimated tokens."""

    model_config = ConfigDict(frozen=True)

    target_size: int = Field(default=500, ge=1)
    max_size: int = Field(default=750, ge=1)
    min_size: int = Field(default=100, ge=0)
    overlap_size: int = Field(default=50, ge=0)
    dynamic_sizing: bool = True
    min_quality: float = Field(default=0.3, ge=0.0, le=1.0)
    min_chars: int = Field(default=50, ge=0)

    @model_validator(mode="after")
    def _check_order(self) -> ChunkingOptions:
        if self.max_size < self.target_size:
            raise ValueError("max_size must be >= target_size")
        if self.min_size > self.target_size:
            raise ValueError("min_size must be <= target_size")
        if self.overlap_size >= self.target_size:
            raise ValueError("overlap_size must be < target_size")
        return self


class ChunkDraft(BaseModel):
    """A chunk produced by the chunker, before it is tied to a source."""

    model_config = ConfigDict(frozen=True)

    index: int
    content: str
    token_count: int
    metadata: ChunkMetadata


@dataclass(frozen=True)
class _Unit:
    text: str
    heading: str | None = None
    sep: str = "\n\n"
    carried: bool = False  # overlap or repeated header, not new content


@dataclass(frozen=True)
class _Piece:
    carried: str
    body: str
    sep: str
    heading: str | None

    @property
    def text(self) -> str:
        return f"{self.carried}{self.sep}{self.body}" if self.carried else self.body


class SemanticChunker:
    """Splits text into structure-aware chunks.

    Parameters
    ----------
    options:
        Default :class:`ChunkingOptions`; each call may override them.
    """

    def __init__(self, options: ChunkingOptions | None = None) -> None:
        self._options = options or ChunkingOptions()

    @property
    def options(self) -> ChunkingOptions:
        return self._options

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_chunks(self, text: str, options: ChunkingOptions | None = None) -> list[ChunkDraft]:
        """Split *text* into contiguous, quality-filtered chunks.

        Returns
        -------
        list[ChunkDraft]
            Chunks indexed 0..N-1.  Empty or whitespace input returns ``[]``.
        """
        opts = options or self._options
        if not text or not text.strip():
            return []

        structure = self.classify_structure(text)
        complexity = self.classify_complexity(text)
        target, max_size = self.adjust_sizes(opts, structure, complexity)

        units = self._split_units(text, structure)
        header = self._table_header(text) if structure == ContentStructure.TABLE else None
        use_overlap = structure not in (ContentStructure.CODE, ContentStructure.TABLE)
        pieces = self._accumulate(
            units,
            target=target,
            max_size=max_size,
            overlap_size=opts.overlap_size if use_overlap else 0,
            header=header,
            structure=structure,
        )
        pieces = self._merge_small_tail(pieces, opts.min_size, max_size)

        drafts: list[ChunkDraft] = []
        single = len(pieces) == 1
        for piece in pieces:
            content = piece.text.strip()
            tokens = estimate_tokens(content)
            quality = self.quality_score(content)
            too_small = tokens < opts.min_size and not single
            if too_small or len(content) < opts.min_chars or quality < opts.min_quality:
                logger.debug(
                    "chunk_rejected",
                    tokens=tokens,
                    chars=len(content),
                    quality=quality,
                )
                continue
            drafts.append(
                ChunkDraft(
                    index=len(drafts),
                    content=content,
                    token_count=tokens,
                    metadata=ChunkMetadata(
                        content_type=self.classify_structure(content),
                        complexity=complexity,
                        quality_score=quality,
                        keywords=extract_keywords(content, limit=5),
                        heading=piece.heading,
                    ),
                )
            )

        logger.debug(
            "chunking_complete",
            structure=structure.value,
            complexity=complexity.value,
            target=target,
            num_chunks=len(drafts),
        )
        return drafts

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    @staticmethod
    def classify_structure(text: str) -> ContentStructure:
        """Return the dominant structure of *text*."""
        lines = [line for line in text.split("\n") if line.strip()]
        if not lines:
            return ContentStructure.PARAGRAPH
        total = len(lines)
        if "```" in text or sum(1 for ln in lines if _CODE_LINE_RE.search(ln)) / total >= 0.4:
            return ContentStructure.CODE
        if sum(1 for ln in lines if _TABLE_ROW_RE.match(ln)) / total >= 0.6:
            return ContentStructure.TABLE
        if sum(1 for ln in lines if _LIST_ITEM_RE.match(ln)) / total >= 0.5:
            return ContentStructure.LIST
        if any(SemanticChunker._heading_of(block) for block in split_paragraphs(text)):
            return ContentStructure.HEADING
        return ContentStructure.PARAGRAPH

    @staticmethod
    def classify_complexity(text: str) -> Complexity:
        """Rate *text* from its average sentence length and paragraph count."""
        sentences = split_sentences(text)
        if not sentences:
            return Complexity.SIMPLE
        avg_words = sum(len(s.split()) for s in sentences) / len(sentences)
        paragraphs = len(split_paragraphs(text))
        if avg_words > 25 or (avg_words > 18 and paragraphs > 10):
            return Complexity.COMPLEX
        if avg_words < 12 and paragraphs <= 5:
            return Complexity.SIMPLE
        return Complexity.MEDIUM

    @staticmethod
    def adjust_sizes(
        options: ChunkingOptions,
        structure: ContentStructure,
        complexity: Complexity,
    ) -> tuple[int, int]:
        """Return ``(target, max)`` after dynamic sizing."""
        if not options.dynamic_sizing:
            return options.target_size, options.max_size
        factor = _COMPLEXITY_FACTORS.get(complexity, 1.0) * _STRUCTURE_FACTORS.get(structure, 1.0)
        target = max(options.min_size, options.overlap_size + 1, int(options.target_size * factor))
        max_size = max(target, int(options.max_size * factor))
        return target, max_size

    @staticmethod
    def quality_score(text: str) -> float:
        """Heuristic 0-1 quality from length, punctuation density and sentence lengths."""
        stripped = text.strip()
        if not stripped:
            return 0.0
        chars = len(stripped)
        words = stripped.split()
        meaningful = sum(1 for c in stripped if c.isalnum() or c.isspace()) / chars

        length_score = min(1.0, chars / 400)

        punctuation = sum(stripped.count(p) for p in ".!?,;:")
        density = punctuation / max(1, len(words))
        if 0.02 <= density <= 0.3:
            punct_score = 1.0
        elif density < 0.02:
            punct_score = 0.5
        else:
            punct_score = max(0.0, 1.0 - (density - 0.3) * 2)

        lengths = [len(s.split()) for s in split_sentences(stripped)] or [len(words)]
        avg = sum(lengths) / len(lengths)
        sentence_score = 1.0 if 3 <= avg <= 40 else 0.5
        if len(lengths) > 2 and statistics.pstdev(lengths) > 1.5 * avg:
            sentence_score *= 0.8

        score = 0.4 * length_score + 0.3 * punct_score + 0.3 * sentence_score
        if meaningful < 0.6:
            score *= 0.5
        return round(min(1.0, score), 4)

    # ------------------------------------------------------------------
    # Splitting
    # ------------------------------------------------------------------

    def _split_units(self, text: str, structure: ContentStructure) -> list[_Unit]:
        if structure == ContentStructure.CODE:
            blocks, sep = self._split_code(text), "\n\n"
        elif structure == ContentStructure.LIST:
            blocks, sep = self._split_list(text), "\n"
        elif structure == ContentStructure.TABLE:
            blocks, sep = self._table_rows(text), "\n"
        else:
            blocks, sep = split_paragraphs(text), "\n\n"

        units: list[_Unit] = []
        heading: str | None = None
        for block in blocks:
            found = self._heading_of(block)
            if found:
                heading = found
            units.append(_Unit(text=block, heading=heading, sep=sep))
        return units

    @staticmethod
    def _split_code(text: str) -> list[str]:
        """Split source code at top-level function/class definitions."""
        starts = sorted({0, *(m.start() for m in _CODE_BOUNDARY_RE.finditer(text))})
        blocks = [text[a:b].strip("\n") for a, b in zip(starts, [*starts[1:], len(text)])]
        return [b for b in blocks if b.strip()]

    @staticmethod
    def _split_list(text: str) -> list[str]:
        """Split a list into items; continuation lines stay with their item."""
        items: list[str] = []
        for line in text.split("\n"):
            if not line.strip():
                continue
            if _LIST_ITEM_RE.match(line) or not items:
                items.append(line.rstrip())
            else:
                items[-1] = f"{items[-1]}\n{line.rstrip()}"
        return items

    @staticmethod
    def _table_rows(text: str) -> list[str]:
        lines = [line.rstrip() for line in text.split("\n") if line.strip()]
        if len(lines) > 1 and _TABLE_SEPARATOR_RE.match(lines[1]):
            return lines[2:]
        return lines[1:] if len(lines) > 1 else lines

    @staticmethod
    def _table_header(text: str) -> str | None:
        lines = [line.rstrip() for line in text.split("\n") if line.strip()]
        if len(lines) < 2:
            return None
        if _TABLE_SEPARATOR_RE.match(lines[1]):
            return f"{lines[0]}\n{lines[1]}"
        return lines[0]

    @staticmethod
    def _heading_of(block: str) -> str | None:
        """Return the heading text if *block* starts with a heading line."""
        first = block.strip().split("\n", 1)[0].strip()
        match = _MD_HEADING_RE.match(first)
        if match:
            return match.group(1).strip()
        if first.endswith(":") and len(first) <= 60 and "\n" in block.strip():
            return first.rstrip(":").strip()
        return None

    def _expand(self, unit: _Unit, max_size: int, target: int, structure: ContentStructure) -> list[_Unit]:
        """Break a unit larger than *max_size* into sentence (or line) units."""
        if estimate_tokens(unit.text) <= max_size:
            return [unit]
        if structure in (ContentStructure.CODE, ContentStructure.TABLE):
            parts, sep = [ln for ln in unit.text.split("\n") if ln.strip()], "\n"
        else:
            parts, sep = split_sentences(unit.text), " "

        expanded: list[_Unit] = []
        for i, part in enumerate(parts):
            part_sep = unit.sep if i == 0 else sep
            if estimate_tokens(part) <= max_size:
                expanded.append(_Unit(text=part, heading=unit.heading, sep=part_sep))
                continue
            for j, cut in enumerate(self._hard_cut(part, target)):
                expanded.append(
                    _Unit(text=cut, heading=unit.heading, sep=part_sep if j == 0 else " ")
                )
        return expanded

    @staticmethod
    def _hard_cut(text: str, target: int) -> list[str]:
        """Cut *text* into pieces of at most *target* tokens on word boundaries."""
        limit = max(1, target * CHARS_PER_TOKEN)
        pieces: list[str] = []
        rest = text.strip()
        while len(rest) > limit:
            cut = rest.rfind(" ", 0, limit)
            if cut <= limit // 2:
                cut = limit
            pieces.append(rest[:cut].strip())
            rest = rest[cut:].strip()
        if rest:
            pieces.append(rest)
        return pieces

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def _accumulate(
        self,
        units: list[_Unit],
        target: int,
        max_size: int,
        overlap_size: int,
        header: str | None,
        structure: ContentStructure,
    ) -> list[_Piece]:
        """Greedily pack units into pieces of at most *target* tokens.

        A single unit may exceed *target* up to *max_size*.  After each
        flush the next piece starts with carried text (sentence overlap or
        the table header) that is dropped if it would push the piece past
        *max_size*.
        """
        pieces: list[_Piece] = []
        current: list[_Unit] = []

        def joined(parts: list[_Unit]) -> str:
            out = ""
            for idx, part in enumerate(parts):
                out = part.text if idx == 0 else f"{out}{part.sep}{part.text}"
            return out

        def carried_start(previous_body: list[_Unit]) -> list[_Unit]:
            if header:
                return [_Unit(text=header, heading=None, sep="\n", carried=True)]
            if overlap_size <= 0 or not previous_body:
                return []
            tail_sentences = split_sentences(previous_body[-1].text)
            kept: list[str] = []
            total = 0
            for sentence in reversed(tail_sentences):
                tokens = estimate_tokens(sentence)
                if total + tokens > overlap_size:
                    break
                kept.insert(0, sentence)
                total += tokens
            if not kept:
                return []
            return [_Unit(text=" ".join(kept), heading=previous_body[-1].heading, carried=True)]

        def flush() -> None:
            nonlocal current
            body = [u for u in current if not u.carried]
            if not body:
                return
            carried = [u for u in current if u.carried]
            body_text = joined([replace(body[0], sep="\n\n"), *body[1:]])
            pieces.append(
                _Piece(
                    carried=joined(carried),
                    body=body_text,
                    sep=body[0].sep if carried else "",
                    heading=body[0].heading,
                )
            )
            current = carried_start(body)

        if header:
            current = [_Unit(text=header, heading=None, sep="\n", carried=True)]

        for raw_unit in units:
            for unit in self._expand(raw_unit, max_size, target, structure):
                has_body = any(not u.carried for u in current)
                if has_body and estimate_tokens(joined([*current, unit])) > target:
                    flush()
                    has_body = False
                if not has_body and current and estimate_tokens(joined([*current, unit])) > max_size:
                    current = []
                current.append(unit)
        flush()
        return pieces

    @staticmethod
    def _merge_small_tail(pieces: list[_Piece], min_size: int, max_size: int) -> list[_Piece]:
        """Fold a trailing piece below *min_size* into its predecessor when it fits."""
        if len(pieces) < 2:
            return pieces
        last, prev = pieces[-1], pieces[-2]
        if estimate_tokens(last.text) >= min_size:
            return pieces
        merged_body = f"{prev.body}{last.sep or chr(10) * 2}{last.body}"
        merged = _Piece(carried=prev.carried, body=merged_body, sep=prev.sep, heading=prev.heading)
        if estimate_tokens(merged.text) > max_size:
            return pieces
        return [*pieces[:-2], merged]
