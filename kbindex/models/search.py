"""Search request/response models exposed by the retrieval service."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, ConfigDict, Field


class SearchFilters(BaseModel):
    """Metadata filters applied to the candidate set before scoring.

    ``type``, ``ids``, ``exclude_ids``, ``date_after`` and ``date_before``
    form the public filter surface (ids are content ids).  ``doc_id`` and
    ``chunk_ids`` are used internally by the pipeline for counting.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    content_type: str | None = Field(default=None, alias="type")
    ids: list[str] | None = None
    exclude_ids: list[str] | None = None
    date_after: date | None = None
    date_before: date | None = None
    doc_id: int | None = None
    chunk_ids: list[int] | None = None

    def is_empty(self) -> bool:
        return not any(
            value is not None
            for value in (
                self.content_type,
                self.ids,
                self.exclude_ids,
                self.date_after,
                self.date_before,
                self.doc_id,
                self.chunk_ids,
            )
        )


class SearchResult(BaseModel):
    """One retrieved chunk with its citation metadata."""

    model_config = ConfigDict(frozen=True)

    chunk_id: int
    doc_id: int
    content_id: str
    title: str
    url: str
    anchor: str
    heading_path: list[str] = Field(default_factory=list)
    text: str
    score: float
    token_estimate: int = 0


class SearchResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    results: list[SearchResult] = Field(default_factory=list)
    total_scanned: int = 0
    total_candidates: int = 0
    truncated: bool = False
    query_time_ms: int = 0


class IndexStats(BaseModel):
    """Aggregate index counts for status screens."""

    model_config = ConfigDict(frozen=True)

    total_docs: int = 0
    total_chunks: int = 0
    total_vectors: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_status: dict[str, int] = Field(default_factory=dict)
