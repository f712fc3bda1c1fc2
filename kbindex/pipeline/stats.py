"""Index-wide statistics shared by the Cleanup phase and ``get_stats()``."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from kbindex.interfaces.vector_index import IVectorIndex
from kbindex.models.kb import DocumentStatus
from kbindex.providers.metadata import SQLiteChunkRepository, SQLiteDocumentRepository


async def compute_index_stats(
    documents: SQLiteDocumentRepository,
    chunks: SQLiteChunkRepository,
    vector_index: IVectorIndex,
) -> dict[str, Any]:
    """Aggregate document, chunk and vector counts into one dict.

    ``coverage`` is the indexed share of all documents in percent (one
    decimal); ``avg_chunks_per_doc`` is rounded to two decimals.
    """
    by_status = await documents.counts_by_status()
    total_docs = sum(by_status.values())
    indexed_docs = by_status.get(DocumentStatus.INDEXED.value, 0)
    chunk_totals = await chunks.totals()
    total_chunks = chunk_totals["total_chunks"]
    description = await vector_index.describe()

    return {
        "total_docs": total_docs,
        "indexed_docs": indexed_docs,
        "pending_docs": by_status.get(DocumentStatus.PENDING.value, 0),
        "chunked_docs": by_status.get(DocumentStatus.CHUNKED.value, 0),
        "error_docs": by_status.get(DocumentStatus.ERROR.value, 0),
        "excluded_docs": by_status.get(DocumentStatus.EXCLUDED.value, 0),
        "total_chunks": total_chunks,
        "total_vectors": await vector_index.count(),
        "total_tokens": chunk_totals["total_tokens"],
        "avg_chunks_per_doc": round(total_chunks / total_docs, 2) if total_docs else 0,
        "coverage": round(indexed_docs / total_docs * 100, 1) if total_docs else 0,
        "last_indexed_at": await documents.last_indexed_at(),
        "vector_model": description.get("model"),
        "vector_dimensions": description.get("dimensions"),
        "calculated_at": datetime.now(tz=timezone.utc).isoformat(),  # noqa: UP017
    }
