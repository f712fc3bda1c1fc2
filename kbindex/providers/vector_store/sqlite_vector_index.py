"""Self-contained SQLite vector index.

Stores one float32 blob per chunk in a ``kb_vectors`` table together with
the filterable metadata (document, content id, type, publish date).
Search narrows candidates with SQL filters first, reads at most
``max_scan`` of them in chunk-id order, and ranks them by cosine
similarity in numpy.  When the filtered candidate set is larger than the
ceiling the result is flagged ``truncated`` so callers can narrow their
filters.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any

import numpy as np
import structlog

from kbindex.interfaces.vector_index import IVectorIndex
from kbindex.models.kb import VectorMatch, VectorMetadata, VectorRecord, VectorSearchResult
from kbindex.models.search import SearchFilters
from kbindex.providers.sqlite_support import connect, placeholders, prepare_database
from kbindex.providers.vector_store.similarity import (
    VECTOR_DTYPE,
    deserialize_vector,
    rank_by_cosine,
    serialize_vector,
)
from kbindex.utils.errors import ValidationError

logger = structlog.get_logger(logger_name=__name__)

DEFAULT_MAX_SCAN = 5000

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS kb_vectors (
    chunk_id     INTEGER PRIMARY KEY,
    doc_id       INTEGER NOT NULL,
    content_id   TEXT    NOT NULL,
    content_type TEXT    NOT NULL DEFAULT '',
    published_at TEXT,
    provider     TEXT    NOT NULL DEFAULT '',
    model        TEXT    NOT NULL DEFAULT '',
    dims         INTEGER NOT NULL,
    embedding    BLOB    NOT NULL,
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_kb_vectors_doc ON kb_vectors(doc_id);",
    "CREATE INDEX IF NOT EXISTS idx_kb_vectors_type ON kb_vectors(content_type);",
    "CREATE INDEX IF NOT EXISTS idx_kb_vectors_content ON kb_vectors(content_id);",
    "CREATE INDEX IF NOT EXISTS idx_kb_vectors_published ON kb_vectors(published_at);",
]

_UPSERT_SQL = """\
INSERT INTO kb_vectors
    (chunk_id, doc_id, content_id, content_type, published_at, provider, model, dims, embedding)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(chunk_id)
DO UPDATE SET doc_id       = excluded.doc_id,
              content_id   = excluded.content_id,
              content_type = excluded.content_type,
              published_at = excluded.published_at,
              provider     = excluded.provider,
              model        = excluded.model,
              dims         = excluded.dims,
              embedding    = excluded.embedding,
              created_at   = strftime('%Y-%m-%dT%H:%M:%fZ', 'now');
"""


def build_filter_clause(filters: SearchFilters | None) -> tuple[str, list[Any]]:
    """Translate *filters* into a SQL ``WHERE`` clause and its parameters."""
    if filters is None or filters.is_empty():
        return "", []

    conditions: list[str] = []
    params: list[Any] = []
    if filters.content_type:
        conditions.append("content_type = ?")
        params.append(filters.content_type)
    if filters.ids is not None:
        if not filters.ids:
            conditions.append("0")
        else:
            conditions.append(f"content_id IN ({placeholders(len(filters.ids))})")
            params.extend(filters.ids)
    if filters.exclude_ids:
        conditions.append(f"content_id NOT IN ({placeholders(len(filters.exclude_ids))})")
        params.extend(filters.exclude_ids)
    if filters.date_after is not None:
        conditions.append("published_at >= ?")
        params.append(filters.date_after.isoformat())
    if filters.date_before is not None:
        conditions.append("published_at <= ?")
        params.append(filters.date_before.isoformat())
    if filters.doc_id is not None:
        conditions.append("doc_id = ?")
        params.append(filters.doc_id)
    if filters.chunk_ids is not None:
        if not filters.chunk_ids:
            conditions.append("0")
        else:
            conditions.append(f"chunk_id IN ({placeholders(len(filters.chunk_ids))})")
            params.extend(filters.chunk_ids)

    if not conditions:
        return "", []
    return "WHERE " + " AND ".join(conditions), params


class SQLiteVectorIndex(IVectorIndex):
    """Default vector index: SQLite rows plus a filtered, capped cosine scan.

    Parameters
    ----------
    db_path:
        SQLite database file (shared with the metadata repositories).
    max_scan:
        Maximum number of candidate vectors scored per search.
    """

    def __init__(self, db_path: str | Path, max_scan: int = DEFAULT_MAX_SCAN) -> None:
        self._db_path = Path(db_path)
        self._max_scan = max(1, max_scan)

    async def initialize(self) -> None:
        """Create the vectors table and indices if they don't exist."""
        await prepare_database(
            self._db_path,
            [_CREATE_TABLE_SQL, *_CREATE_INDICES_SQL],
            self.get_provider_name(),
        )
        logger.info("vector_index_initialized", path=str(self._db_path), max_scan=self._max_scan)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def store(self, chunk_id: int, vector: list[float], metadata: VectorMetadata) -> None:
        if not vector:
            raise ValidationError(
                message=f"Refusing to store an empty vector for chunk {chunk_id}",
                provider_name=self.get_provider_name(),
            )
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute(
                _UPSERT_SQL,
                (
                    chunk_id,
                    metadata.doc_id,
                    metadata.content_id,
                    metadata.content_type,
                    metadata.published_at.isoformat() if metadata.published_at else None,
                    metadata.provider,
                    metadata.model,
                    len(vector),
                    serialize_vector(vector),
                ),
            )
            await db.commit()

    async def delete(self, chunk_id: int) -> bool:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute("DELETE FROM kb_vectors WHERE chunk_id = ?", (chunk_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def delete_many(self, chunk_ids: list[int]) -> int:
        if not chunk_ids:
            return 0
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"DELETE FROM kb_vectors WHERE chunk_id IN ({placeholders(len(chunk_ids))})",
                chunk_ids,
            )
            await db.commit()
            return cursor.rowcount

    async def delete_for_document(self, doc_id: int) -> int:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute("DELETE FROM kb_vectors WHERE doc_id = ?", (doc_id,))
            await db.commit()
            return cursor.rowcount

    async def update_document_metadata(
        self, doc_id: int, content_type: str, published_at: date | None
    ) -> int:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "UPDATE kb_vectors SET content_type = ?, published_at = ? WHERE doc_id = ?",
                (content_type, published_at.isoformat() if published_at else None, doc_id),
            )
            await db.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(
        self,
        query_vector: list[float],
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> VectorSearchResult:
        where, params = build_filter_clause(filters)
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(f"SELECT COUNT(*) FROM kb_vectors {where}", params)
            total_candidates = (await cursor.fetchone())[0]
            cursor = await db.execute(
                f"SELECT chunk_id, doc_id, content_id, dims, embedding FROM kb_vectors {where} "
                "ORDER BY chunk_id LIMIT ?",
                [*params, self._max_scan],
            )
            rows = await cursor.fetchall()

        if not rows:
            return VectorSearchResult(total_candidates=total_candidates)

        expected_dims = len(query_vector)
        mismatched = [row["chunk_id"] for row in rows if row["dims"] != expected_dims]
        if mismatched:
            raise ValidationError(
                message=(
                    f"Dimension mismatch: query has {expected_dims} dims, "
                    f"{len(mismatched)} stored vectors differ (e.g. chunk {mismatched[0]})"
                ),
                provider_name=self.get_provider_name(),
            )

        chunk_ids = [row["chunk_id"] for row in rows]
        matrix = np.vstack([deserialize_vector(row["embedding"]) for row in rows])
        owners = {row["chunk_id"]: (row["doc_id"], row["content_id"]) for row in rows}
        ranked = rank_by_cosine(query_vector, chunk_ids, matrix, top_k)

        truncated = total_candidates > len(rows)
        if truncated:
            logger.warning(
                "vector_scan_truncated",
                total_candidates=total_candidates,
                max_scan=self._max_scan,
            )

        return VectorSearchResult(
            matches=[
                VectorMatch(
                    chunk_id=chunk_id,
                    doc_id=owners[chunk_id][0],
                    content_id=owners[chunk_id][1],
                    score=score,
                )
                for chunk_id, score in ranked
            ],
            total_scanned=len(rows),
            total_candidates=total_candidates,
            truncated=truncated,
        )

    async def count(self, filters: SearchFilters | None = None) -> int:
        where, params = build_filter_clause(filters)
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(f"SELECT COUNT(*) FROM kb_vectors {where}", params)
            return (await cursor.fetchone())[0]

    async def exists(self, chunk_id: int) -> bool:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "SELECT 1 FROM kb_vectors WHERE chunk_id = ? LIMIT 1", (chunk_id,)
            )
            return await cursor.fetchone() is not None

    async def get(self, chunk_id: int) -> VectorRecord | None:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute("SELECT * FROM kb_vectors WHERE chunk_id = ?", (chunk_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return VectorRecord(
            chunk_id=row["chunk_id"],
            vector=deserialize_vector(row["embedding"]).astype(float).tolist(),
            dims=row["dims"],
            metadata=VectorMetadata(
                doc_id=row["doc_id"],
                content_id=row["content_id"],
                content_type=row["content_type"],
                published_at=row["published_at"],
                provider=row["provider"],
                model=row["model"],
            ),
            created_at=row["created_at"],
        )

    async def chunk_ids(self) -> list[int]:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute("SELECT chunk_id FROM kb_vectors ORDER BY chunk_id")
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def describe(self) -> dict[str, object]:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "SELECT model, dims FROM kb_vectors ORDER BY created_at DESC, chunk_id DESC LIMIT 1"
            )
            row = await cursor.fetchone()
        if row is None:
            return {"model": None, "dimensions": None, "bytes_per_vector": None}
        return {
            "model": row["model"],
            "dimensions": row["dims"],
            "bytes_per_vector": row["dims"] * VECTOR_DTYPE.itemsize,
        }

    def get_provider_name(self) -> str:
        return "sqlite_vector_index"
