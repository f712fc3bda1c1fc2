"""In-memory vector index backed by numpy arrays.

Same contract and ranking as the SQLite index but nothing is persisted.
Useful for ephemeral runs and as a second backend proving callers do
not depend on storage details.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

import numpy as np

from kbindex.interfaces.vector_index import IVectorIndex
from kbindex.models.kb import VectorMatch, VectorMetadata, VectorRecord, VectorSearchResult
from kbindex.models.search import SearchFilters
from kbindex.providers.vector_store.similarity import VECTOR_DTYPE, rank_by_cosine
from kbindex.utils.errors import ValidationError


def matches_filters(chunk_id: int, metadata: VectorMetadata, filters: SearchFilters | None) -> bool:
    """Python equivalent of the SQL filter clause used by the SQLite index."""
    if filters is None:
        return True
    if filters.content_type and metadata.content_type != filters.content_type:
        return False
    if filters.ids is not None and metadata.content_id not in filters.ids:
        return False
    if filters.exclude_ids and metadata.content_id in filters.exclude_ids:
        return False
    if filters.date_after is not None and (
        metadata.published_at is None or metadata.published_at < filters.date_after
    ):
        return False
    if filters.date_before is not None and (
        metadata.published_at is None or metadata.published_at > filters.date_before
    ):
        return False
    if filters.doc_id is not None and metadata.doc_id != filters.doc_id:
        return False
    return not (filters.chunk_ids is not None and chunk_id not in filters.chunk_ids)


class InMemoryVectorIndex(IVectorIndex):
    """Dict of chunk id → (float32 vector, metadata)."""

    def __init__(self, max_scan: int = 5000) -> None:
        self._max_scan = max(1, max_scan)
        self._vectors: dict[int, np.ndarray] = {}
        self._metadata: dict[int, VectorMetadata] = {}
        self._created: dict[int, datetime] = {}

    async def store(self, chunk_id: int, vector: list[float], metadata: VectorMetadata) -> None:
        if not vector:
            raise ValidationError(
                message=f"Refusing to store an empty vector for chunk {chunk_id}",
                provider_name=self.get_provider_name(),
            )
        self._vectors[chunk_id] = np.asarray(vector, dtype=VECTOR_DTYPE)
        self._metadata[chunk_id] = metadata
        self._created[chunk_id] = datetime.now(tz=timezone.utc)  # noqa: UP017

    async def delete(self, chunk_id: int) -> bool:
        self._metadata.pop(chunk_id, None)
        self._created.pop(chunk_id, None)
        return self._vectors.pop(chunk_id, None) is not None

    async def delete_for_document(self, doc_id: int) -> int:
        owned = [cid for cid, meta in self._metadata.items() if meta.doc_id == doc_id]
        for chunk_id in owned:
            await self.delete(chunk_id)
        return len(owned)

    async def update_document_metadata(
        self, doc_id: int, content_type: str, published_at: date | None
    ) -> int:
        owned = [cid for cid, meta in self._metadata.items() if meta.doc_id == doc_id]
        for chunk_id in owned:
            self._metadata[chunk_id] = self._metadata[chunk_id].model_copy(
                update={"content_type": content_type, "published_at": published_at}
            )
        return len(owned)

    async def search(
        self,
        query_vector: list[float],
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> VectorSearchResult:
        candidates = sorted(
            cid for cid, meta in self._metadata.items() if matches_filters(cid, meta, filters)
        )
        scanned = candidates[: self._max_scan]
        if not scanned:
            return VectorSearchResult(total_candidates=len(candidates))

        if any(self._vectors[cid].shape[0] != len(query_vector) for cid in scanned):
            raise ValidationError(
                message=f"Dimension mismatch: query has {len(query_vector)} dims",
                provider_name=self.get_provider_name(),
            )

        matrix = np.vstack([self._vectors[cid] for cid in scanned])
        ranked = rank_by_cosine(query_vector, scanned, matrix, top_k)
        return VectorSearchResult(
            matches=[
                VectorMatch(
                    chunk_id=cid,
                    doc_id=self._metadata[cid].doc_id,
                    content_id=self._metadata[cid].content_id,
                    score=score,
                )
                for cid, score in ranked
            ],
            total_scanned=len(scanned),
            total_candidates=len(candidates),
            truncated=len(candidates) > len(scanned),
        )

    async def count(self, filters: SearchFilters | None = None) -> int:
        return sum(1 for cid, meta in self._metadata.items() if matches_filters(cid, meta, filters))

    async def exists(self, chunk_id: int) -> bool:
        return chunk_id in self._vectors

    async def get(self, chunk_id: int) -> VectorRecord | None:
        if chunk_id not in self._vectors:
            return None
        vector = self._vectors[chunk_id]
        return VectorRecord(
            chunk_id=chunk_id,
            vector=vector.astype(float).tolist(),
            dims=int(vector.shape[0]),
            metadata=self._metadata[chunk_id],
            created_at=self._created[chunk_id],
        )

    async def chunk_ids(self) -> list[int]:
        return sorted(self._vectors)

    async def describe(self) -> dict[str, object]:
        if not self._created:
            return {"model": None, "dimensions": None, "bytes_per_vector": None}
        latest = max(self._created, key=lambda cid: (self._created[cid], cid))
        dims = int(self._vectors[latest].shape[0])
        return {
            "model": self._metadata[latest].model,
            "dimensions": dims,
            "bytes_per_vector": dims * VECTOR_DTYPE.itemsize,
        }

    def get_provider_name(self) -> str:
        return "memory_vector_index"
