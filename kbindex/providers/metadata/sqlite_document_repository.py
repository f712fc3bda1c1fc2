"""SQLite-backed document repository.

One ``kb_documents`` row per content item, unique on ``content_id``.
Rows are created and refreshed by the DocumentBuild phase and their
``status`` is advanced by the later phases.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from kbindex.models.kb import ContentItem, Document, DocumentStatus
from kbindex.models.pipeline import RunOptions
from kbindex.providers.metadata.scope import scope_clause
from kbindex.providers.sqlite_support import connect, prepare_database

logger = structlog.get_logger(logger_name=__name__)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS kb_documents (
    doc_id        INTEGER PRIMARY KEY AUTOINCREMENT,
    content_id    TEXT    NOT NULL UNIQUE,
    content_type  TEXT    NOT NULL,
    title         TEXT    NOT NULL DEFAULT '',
    url           TEXT    NOT NULL DEFAULT '',
    content_hash  TEXT    NOT NULL,
    status        TEXT    NOT NULL DEFAULT 'pending',
    chunk_count   INTEGER NOT NULL DEFAULT 0,
    published_at  TEXT,
    last_error    TEXT,
    indexed_at    TEXT,
    pending_since TEXT,
    created_at    TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at    TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_kb_documents_status ON kb_documents(status);",
    "CREATE INDEX IF NOT EXISTS idx_kb_documents_type ON kb_documents(content_type);",
]

_UPSERT_SQL = """\
INSERT INTO kb_documents
    (content_id, content_type, title, url, content_hash, status, chunk_count,
     published_at, pending_since)
VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
ON CONFLICT(content_id)
DO UPDATE SET content_type  = excluded.content_type,
              title         = excluded.title,
              url           = excluded.url,
              content_hash  = excluded.content_hash,
              status        = excluded.status,
              chunk_count   = 0,
              published_at  = excluded.published_at,
              last_error    = NULL,
              pending_since = excluded.pending_since,
              updated_at    = strftime('%Y-%m-%dT%H:%M:%fZ', 'now');
"""

_SELECT_COLUMNS = (
    "doc_id, content_id, content_type, title, url, content_hash, status, chunk_count, "
    "published_at, last_error, indexed_at, pending_since, created_at, updated_at"
)


def _to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")  # noqa: UP017


def _now_iso() -> str:
    return _to_iso(datetime.now(tz=timezone.utc))  # noqa: UP017


def _row_to_document(row: Any) -> Document:
    return Document(**dict(row))


class SQLiteDocumentRepository:
    """Persistence for :class:`~kbindex.models.kb.Document` rows."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create the documents table and indices if they don't exist."""
        await prepare_database(
            self._db_path,
            [_CREATE_TABLE_SQL, *_CREATE_INDICES_SQL],
            self.get_provider_name(),
        )
        logger.info("document_repository_initialized", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_from_content(self, item: ContentItem, status: DocumentStatus) -> Document:
        """Insert or refresh the document for *item* with *status*.

        Resets ``chunk_count`` and stamps ``pending_since`` when the new
        status is ``pending``.
        """
        pending_since = _now_iso() if status == DocumentStatus.PENDING else None
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute(
                _UPSERT_SQL,
                (
                    item.content_id,
                    item.content_type,
                    item.title,
                    item.url,
                    item.content_hash,
                    status.value,
                    item.published_at.isoformat() if item.published_at else None,
                    pending_since,
                ),
            )
            await db.commit()
            cursor = await db.execute(
                f"SELECT {_SELECT_COLUMNS} FROM kb_documents WHERE content_id = ?",
                (item.content_id,),
            )
            row = await cursor.fetchone()
        return _row_to_document(row)

    async def refresh_metadata(self, item: ContentItem) -> Document | None:
        """Copy type, title, url and publish date from *item*; status is kept."""
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute(
                "UPDATE kb_documents SET content_type = ?, title = ?, url = ?, "
                "published_at = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now') "
                "WHERE content_id = ?",
                (
                    item.content_type,
                    item.title,
                    item.url,
                    item.published_at.isoformat() if item.published_at else None,
                    item.content_id,
                ),
            )
            await db.commit()
            cursor = await db.execute(
                f"SELECT {_SELECT_COLUMNS} FROM kb_documents WHERE content_id = ?",
                (item.content_id,),
            )
            row = await cursor.fetchone()
        return _row_to_document(row) if row else None

    async def mark_status(
        self,
        doc_id: int,
        status: DocumentStatus,
        *,
        chunk_count: int | None = None,
        error: str | None = None,
        indexed_at: datetime | None = None,
    ) -> None:
        """Set *status* plus optional chunk count, error text or indexed stamp.

        ``last_error`` is overwritten with *error* (cleared when None).
        Passing *indexed_at* also clears ``pending_since``.
        """
        assignments = [
            "status = ?",
            "last_error = ?",
            "updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')",
        ]
        params: list[Any] = [status.value, error[:1000] if error else None]
        if chunk_count is not None:
            assignments.append("chunk_count = ?")
            params.append(chunk_count)
        if indexed_at is not None:
            assignments.append("indexed_at = ?")
            assignments.append("pending_since = NULL")
            params.append(_to_iso(indexed_at))

        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute(
                f"UPDATE kb_documents SET {', '.join(assignments)} WHERE doc_id = ?",
                [*params, doc_id],
            )
            await db.commit()

    async def delete(self, doc_id: int) -> bool:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute("DELETE FROM kb_documents WHERE doc_id = ?", (doc_id,))
            await db.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, doc_id: int) -> Document | None:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"SELECT {_SELECT_COLUMNS} FROM kb_documents WHERE doc_id = ?", (doc_id,)
            )
            row = await cursor.fetchone()
        return _row_to_document(row) if row else None

    async def get_by_content_id(self, content_id: str) -> Document | None:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"SELECT {_SELECT_COLUMNS} FROM kb_documents WHERE content_id = ?",
                (content_id,),
            )
            row = await cursor.fetchone()
        return _row_to_document(row) if row else None

    async def list_by_status(
        self,
        status: DocumentStatus,
        scope: RunOptions | None = None,
        after_id: int | None = None,
        limit: int = 50,
    ) -> list[Document]:
        """Documents in *status* within *scope*, ascending by id after *after_id*."""
        scope_sql, scope_params = scope_clause(scope)
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"SELECT {_SELECT_COLUMNS} FROM kb_documents "
                f"WHERE status = ? AND doc_id > ?{scope_sql} ORDER BY doc_id LIMIT ?",
                [status.value, after_id or 0, *scope_params, limit],
            )
            rows = await cursor.fetchall()
        return [_row_to_document(r) for r in rows]

    async def count_by_status(self, status: DocumentStatus, scope: RunOptions | None = None) -> int:
        scope_sql, scope_params = scope_clause(scope)
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"SELECT COUNT(*) FROM kb_documents WHERE status = ?{scope_sql}",
                [status.value, *scope_params],
            )
            return (await cursor.fetchone())[0]

    async def list_all(
        self,
        scope: RunOptions | None = None,
        after_id: int | None = None,
        limit: int = 50,
    ) -> list[Document]:
        scope_sql, scope_params = scope_clause(scope)
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"SELECT {_SELECT_COLUMNS} FROM kb_documents "
                f"WHERE doc_id > ?{scope_sql} ORDER BY doc_id LIMIT ?",
                [after_id or 0, *scope_params, limit],
            )
            rows = await cursor.fetchall()
        return [_row_to_document(r) for r in rows]

    async def count(self, scope: RunOptions | None = None) -> int:
        scope_sql, scope_params = scope_clause(scope)
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                f"SELECT COUNT(*) FROM kb_documents WHERE 1 = 1{scope_sql}", scope_params
            )
            return (await cursor.fetchone())[0]

    async def counts_by_status(self) -> dict[str, int]:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "SELECT status, COUNT(*) AS total FROM kb_documents GROUP BY status"
            )
            rows = await cursor.fetchall()
        return {row["status"]: row["total"] for row in rows}

    async def counts_by_type(self) -> dict[str, int]:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "SELECT content_type, COUNT(*) AS total FROM kb_documents "
                "WHERE status != 'excluded' GROUP BY content_type"
            )
            rows = await cursor.fetchall()
        return {row["content_type"]: row["total"] for row in rows}

    async def pending_since(self, doc_id: int) -> datetime | None:
        """When the document last entered ``pending`` (None once indexed)."""
        document = await self.get(doc_id)
        return document.pending_since if document else None

    async def last_indexed_at(self) -> str | None:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute("SELECT MAX(indexed_at) FROM kb_documents")
            return (await cursor.fetchone())[0]

    def get_provider_name(self) -> str:
        return "sqlite_documents"
