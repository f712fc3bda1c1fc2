"""Abstract base class for vector index backends.

The default backend is a self-contained SQLite table with a brute-force
cosine scan (:class:`~kbindex.providers.vector_store.sqlite_vector_index.SQLiteVectorIndex`).
Approximate nearest-neighbour engines or external vector databases can
implement this same contract without touching the pipeline or retrieval
code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date

from kbindex.models.kb import VectorMetadata, VectorRecord, VectorSearchResult
from kbindex.models.search import SearchFilters


# Concrete implementations (kbindex/providers/vector_store/):
#   SQLiteVectorIndex  : float32 blobs + filtered cosine scan (default)
#   InMemoryVectorIndex: numpy matrix, ephemeral
class IVectorIndex(ABC):
    """Contract for storing and searching chunk embeddings.

    Vectors are keyed by chunk id (exactly one per chunk).  Writes are
    upserts, so duplicate delivery from the job queue is harmless.
    """

    async def initialize(self) -> None:
        """Create backing storage.  Default: nothing to do."""

    @abstractmethod
    async def store(self, chunk_id: int, vector: list[float], metadata: VectorMetadata) -> None:
        """Insert or replace the vector for *chunk_id*."""

    @abstractmethod
    async def delete(self, chunk_id: int) -> bool:
        """Delete one vector.  Returns True if a row was removed."""

    async def delete_many(self, chunk_ids: list[int]) -> int:
        """Delete several vectors.  Backends may override with a bulk statement."""
        removed = 0
        for chunk_id in chunk_ids:
            if await self.delete(chunk_id):
                removed += 1
        return removed

    @abstractmethod
    async def delete_for_document(self, doc_id: int) -> int:
        """Delete every vector owned by *doc_id*.  Returns the number removed."""

    @abstractmethod
    async def update_document_metadata(
        self, doc_id: int, content_type: str, published_at: date | None
    ) -> int:
        """Rewrite the filterable metadata of every vector owned by *doc_id*.

        Used when a document is retyped or redated without a text change,
        so its vectors are kept.  Returns the number of vectors touched.
        """

    @abstractmethod
    async def search(
        self,
        query_vector: list[float],
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> VectorSearchResult:
        """Rank stored vectors by cosine similarity to *query_vector*.

        Filters narrow the candidate set before scoring.  At most the
        configured scan ceiling of candidates (stable order by chunk id) is
        scored; ``total_candidates`` and ``truncated`` report when the
        ceiling applied.

        Raises
        ------
        kbindex.utils.errors.ValidationError
            If *query_vector* does not match the stored dimensionality.
        """

    @abstractmethod
    async def count(self, filters: SearchFilters | None = None) -> int:
        """Count stored vectors matching *filters*."""

    @abstractmethod
    async def exists(self, chunk_id: int) -> bool:
        ...

    @abstractmethod
    async def get(self, chunk_id: int) -> VectorRecord | None:
        ...

    @abstractmethod
    async def chunk_ids(self) -> list[int]:
        """Return every stored chunk id (used by orphan cleanup)."""

    @abstractmethod
    async def describe(self) -> dict[str, object]:
        """Return ``{"model": ..., "dimensions": ...}`` for the most recent vector."""

    @abstractmethod
    def get_provider_name(self) -> str:
        ...
