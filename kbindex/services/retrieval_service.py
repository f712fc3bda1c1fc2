"""Query-time retrieval over whatever the index currently holds.

Flow of a search:

  1. VALIDATE -- strip the query; reject empty or over-long queries and
                 out-of-range ``top_k`` with :class:`ValidationError`.
  2. EMBED    -- one ``embed_single`` call on the embedding provider.
  3. RANK     -- cosine scan in the vector index with filters applied
                 first (bounded by the index's scan ceiling).
  4. HYDRATE  -- a single joined lookup of chunk + document fields;
                 matches whose chunk row vanished meanwhile are dropped.

The service never touches pipeline state, so searches run concurrently
with indexing and see partially built indices.  Provider failures
propagate as :class:`ProviderError` / :class:`RateLimitError`, which
callers can tell apart from a legitimate empty result.
"""

from __future__ import annotations

import time

import structlog

from kbindex.interfaces.embedding_provider import IEmbeddingProvider
from kbindex.interfaces.vector_index import IVectorIndex
from kbindex.models.kb import VectorSearchResult
from kbindex.models.search import IndexStats, SearchFilters, SearchResponse, SearchResult
from kbindex.providers.metadata import SQLiteChunkRepository, SQLiteDocumentRepository
from kbindex.utils.errors import ValidationError
from kbindex.utils.logging import get_logger

DEFAULT_TOP_K = 8
MAX_TOP_K = 50
MAX_QUERY_LENGTH = 2000
SIMILAR_OVERFETCH = 5


class RetrievalService:
    """Semantic search and "more like this" over indexed chunks.

    Parameters
    ----------
    embedding_provider:
        Embeds the query text; must match the model used at index time.
    vector_index:
        Backend holding chunk vectors.
    chunks, documents:
        Metadata repositories used for hydration and statistics.
    max_top_k, max_query_length:
        Request limits (defaults match the configuration defaults).
    """

    def __init__(
        self,
        embedding_provider: IEmbeddingProvider,
        vector_index: IVectorIndex,
        chunks: SQLiteChunkRepository,
        documents: SQLiteDocumentRepository,
        max_top_k: int = MAX_TOP_K,
        max_query_length: int = MAX_QUERY_LENGTH,
    ) -> None:
        self._embedding_provider = embedding_provider
        self._vector_index = vector_index
        self._chunks = chunks
        self._documents = documents
        self._max_top_k = max_top_k
        self._max_query_length = max_query_length
        self._logger: structlog.BoundLogger = get_logger(__name__)

    async def search(
        self,
        query: str,
        top_k: int = DEFAULT_TOP_K,
        filters: SearchFilters | None = None,
    ) -> SearchResponse:
        """Embed *query* and return the *top_k* most similar chunks.

        Raises
        ------
        ValidationError
            Empty or over-long query, or ``top_k`` outside 1..max.
        ProviderError, RateLimitError
            The query could not be embedded.
        """
        started = time.perf_counter()
        cleaned = (query or "").strip()
        if not cleaned:
            raise ValidationError(message="Query must not be empty")
        if len(cleaned) > self._max_query_length:
            raise ValidationError(
                message=f"Query exceeds {self._max_query_length} characters"
            )
        self._validate_top_k(top_k)

        vector = await self._embedding_provider.embed_single(cleaned)
        response = await self._search_vector(vector, top_k, filters, started)
        self._logger.info(
            "search_complete",
            query_length=len(cleaned),
            top_k=top_k,
            results=len(response.results),
            total_scanned=response.total_scanned,
            truncated=response.truncated,
            query_time_ms=response.query_time_ms,
        )
        return response

    async def search_with_vector(
        self,
        vector: list[float],
        top_k: int = DEFAULT_TOP_K,
        filters: SearchFilters | None = None,
    ) -> SearchResponse:
        """Rank by a precomputed query vector (no embedding call)."""
        self._validate_top_k(top_k)
        if not vector:
            raise ValidationError(message="Query vector must not be empty")
        return await self._search_vector(vector, top_k, filters, time.perf_counter())

    async def find_similar_to_item(
        self,
        content_id: str,
        top_k: int = 5,
        filters: SearchFilters | None = None,
    ) -> SearchResponse:
        """Chunks similar to the first embedded chunk of *content_id*.

        The item itself is excluded.  Returns an empty response when the
        item has no embedded chunk yet.
        """
        started = time.perf_counter()
        self._validate_top_k(top_k)

        first = await self._chunks.first_chunk(content_id)
        record = await self._vector_index.get(first.chunk_id) if first else None
        if record is None:
            self._logger.info("similar_item_not_indexed", content_id=content_id)
            return SearchResponse(query_time_ms=self._elapsed_ms(started))

        base = filters or SearchFilters()
        scoped = base.model_copy(update={"exclude_ids": [*(base.exclude_ids or []), content_id]})
        response = await self._search_vector(
            record.vector, top_k + SIMILAR_OVERFETCH, scoped, started
        )
        results = [r for r in response.results if r.content_id != content_id][:top_k]
        return response.model_copy(update={"results": results})

    async def get_stats(self) -> IndexStats:
        by_status = await self._documents.counts_by_status()
        totals = await self._chunks.totals()
        return IndexStats(
            total_docs=sum(by_status.values()),
            total_chunks=totals["total_chunks"],
            total_vectors=await self._vector_index.count(),
            by_type=await self._documents.counts_by_type(),
            by_status=by_status,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_top_k(self, top_k: int) -> None:
        if not 1 <= top_k <= self._max_top_k:
            raise ValidationError(message=f"top_k must be between 1 and {self._max_top_k}")

    async def _search_vector(
        self,
        vector: list[float],
        top_k: int,
        filters: SearchFilters | None,
        started: float,
    ) -> SearchResponse:
        ranked: VectorSearchResult = await self._vector_index.search(vector, top_k, filters)
        hydrated = await self._chunks.get_with_documents([m.chunk_id for m in ranked.matches])

        results: list[SearchResult] = []
        for match in ranked.matches:
            chunk = hydrated.get(match.chunk_id)
            if chunk is None:
                continue
            results.append(
                SearchResult(
                    chunk_id=chunk.chunk_id,
                    doc_id=chunk.doc_id,
                    content_id=chunk.content_id,
                    title=chunk.title,
                    url=chunk.url,
                    anchor=chunk.anchor,
                    heading_path=chunk.heading_path,
                    text=chunk.text,
                    score=match.score,
                    token_estimate=chunk.token_estimate,
                )
            )
        results.sort(key=lambda r: (-r.score, r.chunk_id))

        return SearchResponse(
            results=results,
            total_scanned=ranked.total_scanned,
            total_candidates=ranked.total_candidates,
            truncated=ranked.truncated,
            query_time_ms=self._elapsed_ms(started),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
