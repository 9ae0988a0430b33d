"""SQLite-backed knowledge store.

Persists sources, chunks, embeddings, usage records and training jobs to a
local SQLite database (default ``data/knowledge.db``) using ``aiosqlite``
for async I/O.  Each model is stored as its JSON dump next to the columns
queries filter on; vectors are packed as float32 blobs and compared with a
numpy cosine after the SQL filter has narrowed the candidates.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import aiosqlite
import numpy as np
import structlog

from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.query import SearchFilters
from src.models.rag import Chunk, CorpusStats, Embedding, RetrievedChunk
from src.models.source import Source
from src.models.training import TrainingJob
from src.models.usage import UsageRecord
from src.utils.errors import StoreError
from src.utils.text_normalizer import keyword_overlap
from src.utils.vector_math import cosine_similarities, from_blob, to_blob

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/knowledge.db")

_CREATE_TABLES_SQL = [
    """\
CREATE TABLE IF NOT EXISTS sources (
    id           TEXT PRIMARY KEY,
    agent_id     TEXT    NOT NULL,
    parent_id    TEXT,
    source_type  TEXT    NOT NULL,
    is_active    INTEGER NOT NULL DEFAULT 1,
    created_at   TEXT    NOT NULL,
    payload      TEXT    NOT NULL,
    compressed   BLOB
);
""",
    """\
CREATE TABLE IF NOT EXISTS chunks (
    id            TEXT PRIMARY KEY,
    source_id     TEXT    NOT NULL,
    agent_id      TEXT    NOT NULL,
    chunk_index   INTEGER NOT NULL,
    content       TEXT    NOT NULL,
    content_hash  TEXT    NOT NULL,
    is_duplicate  INTEGER NOT NULL DEFAULT 0,
    created_at    TEXT    NOT NULL,
    payload       TEXT    NOT NULL
);
""",
    """\
CREATE TABLE IF NOT EXISTS embeddings (
    chunk_id   TEXT    NOT NULL,
    model      TEXT    NOT NULL,
    agent_id   TEXT    NOT NULL,
    source_id  TEXT    NOT NULL,
    dimension  INTEGER NOT NULL,
    vector     BLOB    NOT NULL,
    PRIMARY KEY (chunk_id, model)
);
""",
    """\
CREATE TABLE IF NOT EXISTS usage_records (
    id          TEXT PRIMARY KEY,
    agent_id    TEXT,
    created_at  TEXT NOT NULL,
    payload     TEXT NOT NULL
);
""",
    """\
CREATE TABLE IF NOT EXISTS training_jobs (
    id        TEXT PRIMARY KEY,
    agent_id  TEXT NOT NULL,
    payload   TEXT NOT NULL
);
""",
]

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_sources_agent ON sources(agent_id);",
    "CREATE INDEX IF NOT EXISTS idx_sources_parent ON sources(parent_id);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source_id, chunk_index);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_agent_hash ON chunks(agent_id, content_hash);",
    "CREATE INDEX IF NOT EXISTS idx_embeddings_agent ON embeddings(agent_id, model);",
    "CREATE INDEX IF NOT EXISTS idx_usage_agent ON usage_records(agent_id);",
]

_DESCENDANTS_SQL = """\
WITH RECURSIVE tree(id) AS (
    SELECT id FROM sources WHERE id = ?
    UNION ALL
    SELECT s.id FROM sources s JOIN tree t ON s.parent_id = t.id
)
SELECT id FROM tree;
"""

# Source status lives in the JSON payload only.
_LIVE_SOURCE = "s.is_active = 1 AND json_extract(s.payload, '$.status') != 'failed'"

_SEARCHABLE_JOIN = f"""\
FROM chunks c
JOIN sources s ON s.id = c.source_id
WHERE c.agent_id = ? AND c.is_duplicate = 0 AND {_LIVE_SOURCE}
"""

_ORPHANED_DUPLICATES_SQL = f"""\
SELECT c.payload FROM chunks c
JOIN sources s ON s.id = c.source_id
WHERE c.agent_id = ? AND c.is_duplicate = 1 AND {_LIVE_SOURCE}
AND NOT EXISTS (
    SELECT 1 FROM chunks o
    JOIN sources os ON os.id = o.source_id
    WHERE o.id = json_extract(c.payload, '$.duplicate_of')
    AND o.is_duplicate = 0 AND os.is_active = 1
    AND json_extract(os.payload, '$.status') != 'failed'
)
ORDER BY c.created_at, c.chunk_index
"""

_UNEMBEDDED_CHUNKS_SQL = """\
SELECT c.payload FROM chunks c
JOIN sources s ON s.id = c.source_id
WHERE c.agent_id = ? AND c.is_duplicate = 0 AND s.is_active = 1
AND NOT EXISTS (SELECT 1 FROM embeddings e WHERE e.chunk_id = c.id)
ORDER BY c.created_at, c.chunk_index
"""


class SQLiteKnowledgeStore(IKnowledgeStore):
    """SQLite-backed :class:`IKnowledgeStore`."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        """Create tables and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            for table_sql in _CREATE_TABLES_SQL:
                await db.execute(table_sql)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("knowledge_db_initialized", path=str(self._db_path))

    def get_provider_name(self) -> str:
        return "sqlite"

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def save_source(self, source: Source) -> Source:
        payload = source.model_dump_json(exclude={"compressed_content"})
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                "INSERT OR REPLACE INTO sources "
                "(id, agent_id, parent_id, source_type, is_active, created_at, payload, compressed) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    source.id,
                    source.agent_id,
                    source.parent_id,
                    source.source_type.value,
                    int(source.is_active),
                    source.created_at.isoformat(),
                    payload,
                    source.compressed_content,
                ),
            )
            await db.commit()
        return source

    async def get_source(self, source_id: str) -> Source | None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "SELECT payload, compressed, is_active FROM sources WHERE id = ?", (source_id,)
            )
            row = await cursor.fetchone()
        return _load_source(row) if row else None

    async def list_sources(self, agent_id: str, include_inactive: bool = False) -> list[Source]:
        sql = "SELECT payload, compressed, is_active FROM sources WHERE agent_id = ?"
        if not include_inactive:
            sql += " AND is_active = 1"
        sql += " ORDER BY created_at"
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(sql, (agent_id,))
            rows = await cursor.fetchall()
        return [_load_source(r) for r in rows]

    async def deactivate_source(self, source_id: str) -> int:
        async with aiosqlite.connect(str(self._db_path)) as db:
            ids = await self._descendants(db, source_id)
            if not ids:
                return 0
            marks = _placeholders(ids)
            cursor = await db.execute(
                f"UPDATE sources SET is_active = 0 WHERE is_active = 1 AND id IN ({marks})",  # noqa: S608
                ids,
            )
            await db.commit()
            count = cursor.rowcount
        logger.info("source_deactivated", source_id=source_id, count=count)
        return count

    async def delete_source(self, source_id: str) -> int:
        async with aiosqlite.connect(str(self._db_path)) as db:
            ids = await self._descendants(db, source_id)
            if not ids:
                return 0
            marks = _placeholders(ids)
            await db.execute(f"DELETE FROM embeddings WHERE source_id IN ({marks})", ids)  # noqa: S608
            await db.execute(f"DELETE FROM chunks WHERE source_id IN ({marks})", ids)  # noqa: S608
            await db.execute(f"DELETE FROM sources WHERE id IN ({marks})", ids)  # noqa: S608
            await db.commit()
        logger.info("source_deleted", source_id=source_id, count=len(ids))
        return len(ids)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def save_chunks(self, chunks: list[Chunk]) -> int:
        if not chunks:
            return 0
        rows = [
            (
                c.id,
                c.source_id,
                c.agent_id,
                c.chunk_index,
                c.content,
                c.content_hash,
                int(c.is_duplicate),
                c.created_at.isoformat(),
                c.model_dump_json(),
            )
            for c in chunks
        ]
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.executemany(
                "INSERT OR REPLACE INTO chunks "
                "(id, source_id, agent_id, chunk_index, content, content_hash, is_duplicate, "
                "created_at, payload) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            await db.commit()
        return len(rows)

    async def get_chunks(self, source_id: str) -> list[Chunk]:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "SELECT payload FROM chunks WHERE source_id = ? ORDER BY chunk_index",
                (source_id,),
            )
            rows = await cursor.fetchall()
        return [Chunk.model_validate_json(r[0]) for r in rows]

    async def delete_chunks(self, source_id: str) -> int:
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute("DELETE FROM embeddings WHERE source_id = ?", (source_id,))
            cursor = await db.execute("DELETE FROM chunks WHERE source_id = ?", (source_id,))
            await db.commit()
            return cursor.rowcount

    async def find_chunk_by_hash(self, agent_id: str, content_hash: str) -> Chunk | None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                f"SELECT c.payload {_SEARCHABLE_JOIN} AND c.content_hash = ? "  # noqa: S608
                "ORDER BY c.created_at LIMIT 1",
                (agent_id, content_hash),
            )
            row = await cursor.fetchone()
        return Chunk.model_validate_json(row[0]) if row else None

    async def find_orphaned_duplicates(self, agent_id: str) -> list[Chunk]:
        return await self._chunks_where(_ORPHANED_DUPLICATES_SQL, agent_id)

    async def find_unembedded_chunks(self, agent_id: str) -> list[Chunk]:
        return await self._chunks_where(_UNEMBEDDED_CHUNKS_SQL, agent_id)

    # ------------------------------------------------------------------
    # Embeddings and search
    # ------------------------------------------------------------------

    async def upsert_embeddings(self, embeddings: list[Embedding]) -> int:
        if not embeddings:
            return 0
        rows = [
            (e.chunk_id, e.model, e.agent_id, e.source_id, e.dimension, to_blob(e.vector))
            for e in embeddings
        ]
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.executemany(
                "INSERT INTO embeddings (chunk_id, model, agent_id, source_id, dimension, vector) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(chunk_id, model) DO UPDATE SET "
                "dimension = excluded.dimension, vector = excluded.vector",
                rows,
            )
            await db.commit()
        return len(rows)

    async def get_embedding(self, chunk_id: str, model: str) -> Embedding | None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "SELECT chunk_id, model, agent_id, source_id, vector FROM embeddings "
                "WHERE chunk_id = ? AND model = ?",
                (chunk_id, model),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return Embedding(
            chunk_id=row[0],
            model=row[1],
            agent_id=row[2],
            source_id=row[3],
            vector=from_blob(row[4]),
        )

    async def similarity_search(
        self,
        agent_id: str,
        vector: list[float],
        filters: SearchFilters,
        model: str | None = None,
    ) -> list[RetrievedChunk]:
        sql = (
            "SELECT c.payload, s.payload, s.compressed, s.is_active, e.vector "
            "FROM embeddings e JOIN chunks c ON c.id = e.chunk_id "
            "JOIN sources s ON s.id = c.source_id "
            f"WHERE e.agent_id = ? AND e.dimension = ? AND c.is_duplicate = 0 AND {_LIVE_SOURCE}"
        )
        params: list[Any] = [agent_id, len(vector)]
        if model:
            sql += " AND e.model = ?"
            params.append(model)
        sql, params = _with_type_filter(sql, params, filters)

        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        if not rows:
            return []

        matrix = np.vstack([np.frombuffer(r[4], dtype="<f4") for r in rows])
        sims = cosine_similarities(matrix, vector)

        best: dict[str, RetrievedChunk] = {}
        for row, sim in zip(rows, sims):
            similarity = float(sim)
            if similarity < filters.min_similarity:
                continue
            chunk = Chunk.model_validate_json(row[0])
            current = best.get(chunk.id)
            if current is None or similarity > current.similarity:
                source = _load_source(row[1:4])
                best[chunk.id] = _retrieved(chunk, source, similarity, "semantic")

        ranked = sorted(best.values(), key=lambda r: r.similarity, reverse=True)
        return ranked[: filters.max_results]

    async def keyword_search(
        self,
        agent_id: str,
        keywords: list[str],
        filters: SearchFilters,
    ) -> list[RetrievedChunk]:
        terms = [k.lower() for k in keywords if k.strip()]
        if not terms:
            return []
        matches = " OR ".join("instr(lower(c.content), ?) > 0" for _ in terms)
        sql = f"SELECT c.payload, s.payload, s.compressed, s.is_active {_SEARCHABLE_JOIN} AND ({matches})"  # noqa: S608
        sql, params = _with_type_filter(sql, [agent_id, *terms], filters)

        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()

        hits: list[RetrievedChunk] = []
        for row in rows:
            chunk = Chunk.model_validate_json(row[0])
            # instr() also matches inside longer words
            score = keyword_overlap(chunk.content, terms)
            if score > 0 and score >= filters.min_similarity:
                hits.append(
                    _retrieved(chunk, _load_source(row[1:4]), 0.0, "keyword", keyword_score=score)
                )
        hits.sort(key=lambda r: r.keyword_score, reverse=True)
        return hits[: filters.max_results]

    # ------------------------------------------------------------------
    # Usage records and jobs
    # ------------------------------------------------------------------

    async def record_usage(self, record: UsageRecord) -> None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                "INSERT INTO usage_records (id, agent_id, created_at, payload) VALUES (?, ?, ?, ?)",
                (record.id, record.agent_id, record.created_at.isoformat(), record.model_dump_json()),
            )
            await db.commit()

    async def list_usage(self, agent_id: str | None = None) -> list[UsageRecord]:
        async with aiosqlite.connect(str(self._db_path)) as db:
            if agent_id is None:
                cursor = await db.execute("SELECT payload FROM usage_records ORDER BY created_at")
            else:
                cursor = await db.execute(
                    "SELECT payload FROM usage_records WHERE agent_id = ? ORDER BY created_at",
                    (agent_id,),
                )
            rows = await cursor.fetchall()
        return [UsageRecord.model_validate_json(r[0]) for r in rows]

    async def save_job(self, job: TrainingJob) -> TrainingJob:
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                "INSERT OR REPLACE INTO training_jobs (id, agent_id, payload) VALUES (?, ?, ?)",
                (job.id, job.agent_id, job.model_dump_json()),
            )
            await db.commit()
        return job

    async def get_job(self, job_id: str) -> TrainingJob | None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute("SELECT payload FROM training_jobs WHERE id = ?", (job_id,))
            row = await cursor.fetchone()
        return TrainingJob.model_validate_json(row[0]) if row else None

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self, agent_id: str) -> CorpusStats:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "SELECT source_type, COUNT(*), SUM(is_active) FROM sources "
                "WHERE agent_id = ? GROUP BY source_type",
                (agent_id,),
            )
            source_rows = await cursor.fetchall()
            cursor = await db.execute(
                "SELECT COUNT(*), COALESCE(SUM(is_duplicate), 0) FROM chunks WHERE agent_id = ?",
                (agent_id,),
            )
            chunk_row = await cursor.fetchone()
            cursor = await db.execute(
                "SELECT COUNT(*) FROM embeddings WHERE agent_id = ?", (agent_id,)
            )
            embedding_row = await cursor.fetchone()

        by_type = {r[0]: r[1] for r in source_rows}
        return CorpusStats(
            agent_id=agent_id,
            total_sources=sum(by_type.values()),
            active_sources=sum(r[2] or 0 for r in source_rows),
            total_chunks=chunk_row[0] if chunk_row else 0,
            duplicate_chunks=chunk_row[1] if chunk_row else 0,
            total_embeddings=embedding_row[0] if embedding_row else 0,
            sources_by_type=by_type,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _descendants(db: aiosqlite.Connection, source_id: str) -> list[str]:
        cursor = await db.execute(_DESCENDANTS_SQL, (source_id,))
        return [r[0] for r in await cursor.fetchall()]

    async def _chunks_where(self, sql: str, agent_id: str) -> list[Chunk]:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(sql, (agent_id,))
            rows = await cursor.fetchall()
        return [Chunk.model_validate_json(r[0]) for r in rows]


def _placeholders(values: list[Any]) -> str:
    return ", ".join("?" for _ in values)


def _with_type_filter(
    sql: str, params: list[Any], filters: SearchFilters
) -> tuple[str, list[Any]]:
    if not filters.source_types:
        return sql, params
    types = [t.value for t in filters.source_types]
    return f"{sql} AND s.source_type IN ({_placeholders(types)})", [*params, *types]


def _load_source(row: Any) -> Source:
    """Rebuild a Source from ``(payload, compressed, is_active)``."""
    try:
        data = json.loads(row[0])
    except json.JSONDecodeError as exc:
        raise StoreError(f"Corrupt source row: {exc}", provider_name="sqlite") from exc
    data["compressed_content"] = row[1]
    data["is_active"] = bool(row[2])
    return Source.model_validate(data)


def _retrieved(
    chunk: Chunk,
    source: Source,
    similarity: float,
    matched_by: str,
    keyword_score: float = 0.0,
) -> RetrievedChunk:
    return RetrievedChunk(
        chunk=chunk,
        similarity=max(0.0, min(1.0, similarity)),
        keyword_score=keyword_score,
        source_name=source.display_name,
        source_type=source.source_type,
        source_updated_at=source.updated_at,
        matched_by=matched_by,
    )
