"""SQLite-backed chunk repository.

Rows live in ``kb_chunks``.  Re-chunking a document is a hash diff
applied in one transaction: rows whose text hash is still produced are
kept (with index, anchor and heading path refreshed), new hashes are
inserted, and rows no longer produced are stamped ``superseded_at``.
Superseded rows stay out of every read path and are purged by Cleanup
together with their vectors.

Embedding bookkeeping sits on the same row: ``embedded_at`` is set once
a vector is stored, ``embed_attempts``/``embed_error`` track failures.
"""

from __future__ import annotations

import json
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from kbindex.models.kb import Chunk, ChunkDescriptor, ChunkDiff, ChunkWithDocument, DocumentStatus
from kbindex.models.pipeline import RunOptions
from kbindex.providers.metadata.scope import scope_clause
from kbindex.providers.sqlite_support import connect, placeholders, prepare_database

logger = structlog.get_logger(logger_name=__name__)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS kb_chunks (
    chunk_id       INTEGER PRIMARY KEY AUTOINCREMENT,
    doc_id         INTEGER NOT NULL,
    chunk_index    INTEGER NOT NULL,
    anchor         TEXT    NOT NULL,
    heading_path   TEXT    NOT NULL DEFAULT '[]',
    text           TEXT    NOT NULL,
    hash           TEXT    NOT NULL,
    start_offset   INTEGER NOT NULL DEFAULT 0,
    end_offset     INTEGER NOT NULL DEFAULT 0,
    token_estimate INTEGER NOT NULL DEFAULT 0,
    embedded_at    TEXT,
    embed_attempts INTEGER NOT NULL DEFAULT 0,
    embed_error    TEXT,
    superseded_at  TEXT,
    created_at     TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_kb_chunks_doc ON kb_chunks(doc_id, chunk_index);",
    "CREATE INDEX IF NOT EXISTS idx_kb_chunks_hash ON kb_chunks(doc_id, hash);",
    "CREATE INDEX IF NOT EXISTS idx_kb_chunks_embedded ON kb_chunks(embedded_at);",
]

_INSERT_SQL = """\
INSERT INTO kb_chunks
    (doc_id, chunk_index, anchor, heading_path, text, hash,
     start_offset, end_offset, token_estimate)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_REFRESH_SQL = """\
UPDATE kb_chunks
SET chunk_index = ?, anchor = ?, heading_path = ?,
    start_offset = ?, end_offset = ?, token_estimate = ?
WHERE chunk_id = ?;
"""

_CHUNK_COLUMNS = (
    "chunk_id, doc_id, chunk_index, anchor, heading_path, text, hash, start_offset, "
    "end_offset, token_estimate, embedded_at, embed_attempts, embed_error, superseded_at, "
    "created_at"
)

_JOINED_SELECT = """\
SELECT c.chunk_id, c.doc_id, c.anchor, c.heading_path, c.text, c.token_estimate,
       c.embed_attempts, d.content_id, d.content_type, d.title, d.url, d.published_at
FROM kb_chunks c
JOIN kb_documents d ON d.doc_id = c.doc_id
"""

_LIVE = "superseded_at IS NULL"


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")  # noqa: UP017


def _row_to_chunk(row: Any) -> Chunk:
    data = dict(row)
    data["heading_path"] = json.loads(data["heading_path"] or "[]")
    return Chunk(**data)


def _row_to_joined(row: Any) -> ChunkWithDocument:
    data = dict(row)
    data["heading_path"] = json.loads(data["heading_path"] or "[]")
    return ChunkWithDocument(**data)


class SQLiteChunkRepository:
    """Persistence for :class:`~kbindex.models.kb.Chunk` rows.

    Shares its database file with the document repository; the joined
    reads and :meth:`apply_descriptors` touch ``kb_documents``.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        await prepare_database(
            self._db_path,
            [_CREATE_TABLE_SQL, *_CREATE_INDICES_SQL],
            self.get_provider_name(),
        )
        logger.info("chunk_repository_initialized", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Re-chunking
    # ------------------------------------------------------------------

    async def apply_descriptors(
        self, doc_id: int, descriptors: list[ChunkDescriptor]
    ) -> ChunkDiff:
        """Apply *descriptors* to the live chunks of *doc_id* atomically.

        Matching is by text hash (duplicates matched in chunk order).  The
        document is moved to ``chunked`` with the new chunk count in the
        same transaction, so a crash never leaves a half-applied diff.

        Returns
        -------
        ChunkDiff
            Kept / inserted counts and the ids that were superseded; the
            caller removes their vectors.
        """
        now = _now_iso()
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                f"SELECT chunk_id, hash FROM kb_chunks WHERE doc_id = ? AND {_LIVE} "
                "ORDER BY chunk_index, chunk_id",
                (doc_id,),
            )
            available: dict[str, list[int]] = defaultdict(list)
            existing_ids: list[int] = []
            for row in await cursor.fetchall():
                available[row["hash"]].append(row["chunk_id"])
                existing_ids.append(row["chunk_id"])

            kept_ids: set[int] = set()
            inserted = 0
            for descriptor in descriptors:
                heading_path = json.dumps(descriptor.heading_path)
                candidates = available.get(descriptor.hash)
                if candidates:
                    chunk_id = candidates.pop(0)
                    kept_ids.add(chunk_id)
                    await db.execute(
                        _REFRESH_SQL,
                        (
                            descriptor.chunk_index,
                            descriptor.anchor,
                            heading_path,
                            descriptor.start_offset,
                            descriptor.end_offset,
                            descriptor.token_estimate,
                            chunk_id,
                        ),
                    )
                    continue
                await db.execute(
                    _INSERT_SQL,
                    (
                        doc_id,
                        descriptor.chunk_index,
                        descriptor.anchor,
                        heading_path,
                        descriptor.text,
                        descriptor.hash,
                        descriptor.start_offset,
                        descriptor.end_offset,
                        descriptor.token_estimate,
                    ),
                )
                inserted += 1

            superseded = [cid for cid in existing_ids if cid not in kept_ids]
            if superseded:
                await db.execute(
                    f"UPDATE kb_chunks SET superseded_at = ? "
                    f"WHERE chunk_id IN ({placeholders(len(superseded))})",
                    [now, *superseded],
                )
            await db.execute(
                "UPDATE kb_documents SET status = ?, chunk_count = ?, last_error = NULL, "
                "updated_at = ? WHERE doc_id = ?",
                (DocumentStatus.CHUNKED.value, len(descriptors), now, doc_id),
            )
            await db.commit()

        diff = ChunkDiff(kept=len(kept_ids), inserted=inserted, superseded_ids=superseded)
        logger.debug(
            "chunks_replaced",
            doc_id=doc_id,
            kept=diff.kept,
            inserted=diff.inserted,
            superseded=len(superseded),
        )
        return diff

    async def delete_superseded(self, doc_id: int | None = None, limit: int = 500) -> list[int]:
        """Delete up to *limit* superseded rows (of *doc_id* when given); return their ids."""
        doc_sql = " AND doc_id = ?" if doc_id is not None else ""
        doc_params = [doc_id] if doc_id is not None else []
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"SELECT chunk_id FROM kb_chunks WHERE superseded_at IS NOT NULL{doc_sql} "
                "ORDER BY chunk_id LIMIT ?",
                [*doc_params, limit],
            )
            ids = [row["chunk_id"] for row in await cursor.fetchall()]
            if ids:
                await db.execute(
                    f"DELETE FROM kb_chunks WHERE chunk_id IN ({placeholders(len(ids))})", ids
                )
                await db.commit()
        return ids

    async def delete_for_document(self, doc_id: int) -> list[int]:
        """Delete every row (live or superseded) of *doc_id*; return the ids."""
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "SELECT chunk_id FROM kb_chunks WHERE doc_id = ?", (doc_id,)
            )
            ids = [row["chunk_id"] for row in await cursor.fetchall()]
            await db.execute("DELETE FROM kb_chunks WHERE doc_id = ?", (doc_id,))
            await db.commit()
        return ids

    async def delete_orphans(self) -> list[int]:
        """Delete chunks whose document no longer exists."""
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "SELECT c.chunk_id FROM kb_chunks c "
                "LEFT JOIN kb_documents d ON d.doc_id = c.doc_id WHERE d.doc_id IS NULL"
            )
            ids = [row["chunk_id"] for row in await cursor.fetchall()]
            if ids:
                await db.execute(
                    f"DELETE FROM kb_chunks WHERE chunk_id IN ({placeholders(len(ids))})", ids
                )
                await db.commit()
        return ids

    # ------------------------------------------------------------------
    # Embedding bookkeeping
    # ------------------------------------------------------------------

    def _needing_embedding_where(
        self, scope: RunOptions | None, max_attempts: int
    ) -> tuple[str, list[Any]]:
        scope_sql, scope_params = scope_clause(scope, alias="d")
        where = (
            "WHERE c.superseded_at IS NULL AND c.embedded_at IS NULL "
            "AND c.embed_attempts < ? AND d.status NOT IN (?, ?)" + scope_sql
        )
        params = [
            max_attempts,
            DocumentStatus.ERROR.value,
            DocumentStatus.EXCLUDED.value,
            *scope_params,
        ]
        return where, params

    async def list_needing_embedding(
        self,
        scope: RunOptions | None = None,
        after_id: int | None = None,
        limit: int = 20,
        max_attempts: int = 3,
    ) -> list[ChunkWithDocument]:
        """Live, unembedded chunks below *max_attempts*, ascending by id."""
        where, params = self._needing_embedding_where(scope, max_attempts)
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"{_JOINED_SELECT}{where} AND c.chunk_id > ? ORDER BY c.chunk_id LIMIT ?",
                [*params, after_id or 0, limit],
            )
            rows = await cursor.fetchall()
        return [_row_to_joined(r) for r in rows]

    async def count_needing_embedding(
        self, scope: RunOptions | None = None, max_attempts: int = 3
    ) -> int:
        where, params = self._needing_embedding_where(scope, max_attempts)
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM kb_chunks c "
                f"JOIN kb_documents d ON d.doc_id = c.doc_id {where}",
                params,
            )
            return (await cursor.fetchone())[0]

    async def mark_embedded(self, chunk_ids: list[int]) -> None:
        if not chunk_ids:
            return
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute(
                f"UPDATE kb_chunks SET embedded_at = ?, embed_error = NULL "
                f"WHERE chunk_id IN ({placeholders(len(chunk_ids))})",
                [_now_iso(), *chunk_ids],
            )
            await db.commit()

    async def record_embed_failure(self, chunk_ids: list[int], error: str) -> None:
        """Increment ``embed_attempts`` and store *error* for each chunk."""
        if not chunk_ids:
            return
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute(
                f"UPDATE kb_chunks SET embed_attempts = embed_attempts + 1, embed_error = ? "
                f"WHERE chunk_id IN ({placeholders(len(chunk_ids))})",
                [error[:1000], *chunk_ids],
            )
            await db.commit()

    async def reset_embedded(self, chunk_ids: list[int]) -> None:
        """Clear ``embedded_at`` so the chunks are picked up by the embed phase again."""
        if not chunk_ids:
            return
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute(
                f"UPDATE kb_chunks SET embedded_at = NULL "
                f"WHERE chunk_id IN ({placeholders(len(chunk_ids))})",
                chunk_ids,
            )
            await db.commit()

    async def get_failed_chunks(self, max_attempts: int = 3) -> list[Chunk]:
        """Live chunks that exhausted their embedding attempts."""
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM kb_chunks WHERE {_LIVE} "
                "AND embedded_at IS NULL AND embed_attempts >= ? ORDER BY chunk_id",
                (max_attempts,),
            )
            rows = await cursor.fetchall()
        return [_row_to_chunk(r) for r in rows]

    async def reset_failed(self, max_attempts: int = 3) -> int:
        """Zero the attempt counter of exhausted chunks.  Returns rows reset."""
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"UPDATE kb_chunks SET embed_attempts = 0, embed_error = NULL "
                f"WHERE {_LIVE} AND embedded_at IS NULL AND embed_attempts >= ?",
                (max_attempts,),
            )
            await db.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def live_chunks(self, doc_id: int) -> list[Chunk]:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM kb_chunks WHERE doc_id = ? AND {_LIVE} "
                "ORDER BY chunk_index",
                (doc_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_chunk(r) for r in rows]

    async def get_with_documents(self, chunk_ids: list[int]) -> dict[int, ChunkWithDocument]:
        """Hydrate live chunks with their document fields in a single query."""
        if not chunk_ids:
            return {}
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"{_JOINED_SELECT}WHERE c.superseded_at IS NULL "
                f"AND c.chunk_id IN ({placeholders(len(chunk_ids))})",
                chunk_ids,
            )
            rows = await cursor.fetchall()
        joined = [_row_to_joined(r) for r in rows]
        return {item.chunk_id: item for item in joined}

    async def first_chunk(self, content_id: str) -> Chunk | None:
        """Lowest-index live, embedded chunk of the document for *content_id*."""
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "SELECT c.chunk_id, c.doc_id, c.chunk_index, c.anchor, c.heading_path, c.text, "
                "c.hash, c.start_offset, c.end_offset, c.token_estimate, c.embedded_at, "
                "c.embed_attempts, c.embed_error, c.superseded_at, c.created_at "
                "FROM kb_chunks c JOIN kb_documents d ON d.doc_id = c.doc_id "
                "WHERE d.content_id = ? AND c.superseded_at IS NULL "
                "AND c.embedded_at IS NOT NULL ORDER BY c.chunk_index LIMIT 1",
                (content_id,),
            )
            row = await cursor.fetchone()
        return _row_to_chunk(row) if row else None

    async def all_chunk_ids(self) -> set[int]:
        """Every chunk id, live or superseded (used to find orphan vectors)."""
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute("SELECT chunk_id FROM kb_chunks")
            rows = await cursor.fetchall()
        return {row["chunk_id"] for row in rows}

    async def totals(self) -> dict[str, int]:
        """``{"total_chunks": ..., "total_tokens": ...}`` over live rows."""
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) AS total_chunks, "
                "COALESCE(SUM(token_estimate), 0) AS total_tokens "
                f"FROM kb_chunks WHERE {_LIVE}"
            )
            row = await cursor.fetchone()
        return {"total_chunks": row["total_chunks"], "total_tokens": row["total_tokens"]}

    def get_provider_name(self) -> str:
        return "sqlite_chunks"
