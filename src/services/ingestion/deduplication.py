"""Hash-based chunk and sentence deduplication.

Every chunk is fingerprinted with SHA-256 over its normalized text (trimmed,
lowercased, whitespace collapsed).  A chunk is a duplicate when the same
agent already owns a canonical chunk with that fingerprint, either in the
store or earlier in the current batch.  Duplicates are kept, flagged with
``is_duplicate`` and a ``duplicate_of`` back-reference, so provenance stays
auditable; they are simply never embedded.

Sentence-level deduplication hashes each sentence of a chunk and drops
repeats, which removes boilerplate lines repeated inside an otherwise
unique chunk.

Only exact matches after normalization are detected.  Paraphrases are not.

When a canonical chunk goes away (its source is removed, re-ingested or
fails), :meth:`promote_orphans` hands the role to the oldest surviving
duplicate so the content stays retrievable.

Concurrency: the check-then-store sequence for one agent must not
interleave with another batch of the same agent, otherwise two identical
chunks could both be admitted as canonical.  :meth:`deduplicate_and_store`
holds a per-agent lock across both steps; different agents never contend.
"""

from __future__ import annotations

import hashlib
import re
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.models.rag import Chunk
from src.utils.concurrency import KeyedLocks
from src.utils.text_normalizer import estimate_tokens, normalize_for_hash, split_sentences

if TYPE_CHECKING:
    from src.interfaces.knowledge_store import IKnowledgeStore

logger = structlog.get_logger(logger_name=__name__)


class DeduplicationStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_processed: int = 0
    unique_count: int = 0
    duplicate_count: int = 0
    deduplication_rate: float = Field(default=0.0, description="duplicate_count / total_processed")
    space_saved: int = Field(default=0, description="Characters not embedded thanks to dedup.")


class DeduplicationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    unique: list[Chunk] = Field(default_factory=list)
    duplicates: list[Chunk] = Field(default_factory=list)
    stats: DeduplicationStats = Field(default_factory=DeduplicationStats)

    @property
    def all_chunks(self) -> list[Chunk]:
        """Unique and duplicate chunks together, in chunk-index order."""
        return sorted([*self.unique, *self.duplicates], key=lambda c: c.chunk_index)


class DeduplicationEngine:
    """Fingerprints chunks and flags exact duplicates per agent.

    Parameters
    ----------
    store:
        Knowledge store consulted for canonical chunks from earlier runs.
    """

    def __init__(self, store: IKnowledgeStore) -> None:
        self._store = store
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Fingerprints
    # ------------------------------------------------------------------

    @staticmethod
    def chunk_hash(text: str) -> str:
        """Return the SHA-256 hex digest of the normalized *text*."""
        return hashlib.sha256(normalize_for_hash(text).encode("utf-8")).hexdigest()

    async def is_duplicate(self, content_hash: str, agent_id: str) -> bool:
        """True if *agent_id* already owns a canonical chunk with *content_hash*."""
        return await self._store.find_chunk_by_hash(agent_id, content_hash) is not None

    # ------------------------------------------------------------------
    # Sentence level
    # ------------------------------------------------------------------

    def dedupe_sentences(self, text: str) -> str:
        """Drop repeated sentences from *text*, keeping the first occurrence.

        Paragraph breaks are preserved; a paragraph left empty is removed.
        """
        deduped, _ = self.dedupe_sentences_counted(text)
        return deduped

    def dedupe_sentences_counted(self, text: str) -> tuple[str, int]:
        """Like :meth:`dedupe_sentences` but also return the number removed."""
        seen: set[str] = set()
        removed = 0
        paragraphs: list[str] = []
        for paragraph in re.split(r"\n\s*\n", text):
            # Lines inside a paragraph (list items, table rows) stay separate.
            lines: list[str] = []
            for line in paragraph.split("\n"):
                kept: list[str] = []
                for sentence in split_sentences(line):
                    key = self.chunk_hash(sentence)
                    if key in seen:
                        removed += 1
                        continue
                    seen.add(key)
                    kept.append(sentence)
                if kept:
                    lines.append(" ".join(kept))
            if lines:
                paragraphs.append("\n".join(lines))
        return "\n\n".join(paragraphs), removed

    def apply_sentence_dedup(self, chunk: Chunk) -> tuple[Chunk, int]:
        """Return *chunk* with repeated sentences removed and its hash/tokens refreshed."""
        content, removed = self.dedupe_sentences_counted(chunk.content)
        if not removed:
            if chunk.content_hash:
                return chunk, 0
            return chunk.model_copy(update={"content_hash": self.chunk_hash(chunk.content)}), 0
        return (
            chunk.model_copy(
                update={
                    "content": content,
                    "token_count": estimate_tokens(content),
                    "content_hash": self.chunk_hash(content),
                }
            ),
            removed,
        )

    # ------------------------------------------------------------------
    # Chunk level
    # ------------------------------------------------------------------

    async def deduplicate_batch(self, chunks: list[Chunk], agent_id: str) -> DeduplicationResult:
        """Flag duplicates in *chunks*, in order.

        Callers that store the result must hold the agent's lock (see
        :meth:`deduplicate_and_store`) so another batch cannot admit the
        same content between the check and the write.
        """
        seen: dict[str, str] = {}
        unique: list[Chunk] = []
        duplicates: list[Chunk] = []
        space_saved = 0

        for chunk in chunks:
            content_hash = chunk.content_hash or self.chunk_hash(chunk.content)
            canonical_id = seen.get(content_hash)
            if canonical_id is None:
                existing = await self._store.find_chunk_by_hash(agent_id, content_hash)
                if existing is not None and existing.id != chunk.id:
                    canonical_id = existing.id

            if canonical_id is not None:
                duplicates.append(
                    chunk.model_copy(
                        update={
                            "content_hash": content_hash,
                            "is_duplicate": True,
                            "duplicate_of": canonical_id,
                        }
                    )
                )
                space_saved += len(chunk.content)
                continue

            seen[content_hash] = chunk.id
            unique.append(
                chunk.model_copy(
                    update={"content_hash": content_hash, "is_duplicate": False, "duplicate_of": None}
                )
            )

        total = len(chunks)
        stats = DeduplicationStats(
            total_processed=total,
            unique_count=len(unique),
            duplicate_count=len(duplicates),
            deduplication_rate=round(len(duplicates) / total, 4) if total else 0.0,
            space_saved=space_saved,
        )
        logger.debug(
            "deduplication_complete",
            agent_id=agent_id,
            total=total,
            duplicates=len(duplicates),
        )
        return DeduplicationResult(unique=unique, duplicates=duplicates, stats=stats)

    async def deduplicate_and_store(self, chunks: list[Chunk], agent_id: str) -> DeduplicationResult:
        """Deduplicate *chunks* and persist them under the agent's lock."""
        async with self._locks.get(agent_id):
            result = await self.deduplicate_batch(chunks, agent_id)
            await self._store.save_chunks(result.all_chunks)
        return result

    async def promote_orphans(self, agent_id: str) -> list[Chunk]:
        """Find a new canonical for duplicates whose canonical went away.

        Per content hash, a live canonical is reused when one exists;
        otherwise the oldest surviving duplicate is promoted.  The other
        duplicates are pointed at it.  Returns the promoted chunks, which
        have no embedding yet.
        """
        async with self._locks.get(agent_id):
            orphans = await self._store.find_orphaned_duplicates(agent_id)
            if not orphans:
                return []
            by_hash: dict[str, list[Chunk]] = {}
            for chunk in orphans:
                by_hash.setdefault(chunk.content_hash, []).append(chunk)

            promoted: list[Chunk] = []
            updated: list[Chunk] = []
            for content_hash, group in by_hash.items():
                canonical = await self._store.find_chunk_by_hash(agent_id, content_hash)
                if canonical is None:
                    canonical = group[0].model_copy(
                        update={"is_duplicate": False, "duplicate_of": None}
                    )
                    promoted.append(canonical)
                    updated.append(canonical)
                    group = group[1:]
                updated.extend(c.model_copy(update={"duplicate_of": canonical.id}) for c in group)
            await self._store.save_chunks(updated)

        logger.info(
            "duplicates_repointed",
            agent_id=agent_id,
            promoted=len(promoted),
            repointed=len(updated) - len(promoted),
        )
        return promoted
