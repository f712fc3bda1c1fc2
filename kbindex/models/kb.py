"""Knowledge-base data models: content items, documents, chunks, vectors.

All models are Pydantic v2 and frozen; updates go through
``model_copy(update={...})``.

Lifecycle of the stored records:
    ContentItem (from the content source)
        → Document   (one per content id, Build phase)
        → Chunk      (many per document, Chunk phase)
        → Vector     (one per chunk, Embed phase)
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kbindex.utils.hashing import sha256_hex


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


class DocumentStatus(str, Enum):  # noqa: UP042
    """Lifecycle status of a Document row."""

    PENDING = "pending"      # New or changed content, waiting to be chunked
    CHUNKED = "chunked"      # Chunks written, waiting for embeddings + upsert
    INDEXED = "indexed"      # Every live chunk has a vector
    ERROR = "error"          # Needs manual investigation, not auto-retried
    EXCLUDED = "excluded"    # Empty or opted-out content


class Heading(BaseModel):
    """A heading in the rendered plain text.

    ``offset`` is the character position of the heading text.  When the
    content source does not know it, the chunker locates it by search.
    """

    model_config = ConfigDict(frozen=True)

    level: int = Field(ge=1, le=6)
    text: str
    offset: int | None = Field(default=None, ge=0)


def compute_content_hash(title: str, text: str, headings: list[Any]) -> str:
    """Fingerprint a content item from its title, text and heading list."""
    heading_parts = []
    for heading in headings:
        if isinstance(heading, Heading):
            heading_parts.append(f"{heading.level}:{heading.text}")
        else:
            heading_parts.append(f"{heading.get('level')}:{heading.get('text')}")
    return sha256_hex("\x1f".join([title, text, "\x1e".join(heading_parts)]))


class ContentItem(BaseModel):
    """One item returned by a content source.

    Content sources must be deterministic: unchanged content always yields
    the same ``content_hash``.  When the source does not supply a hash one
    is derived from title, text and headings.
    """

    model_config = ConfigDict(frozen=True)

    content_id: str
    content_type: str = "post"
    title: str = ""
    url: str = ""
    text: str = ""
    headings: list[Heading] = Field(default_factory=list)
    content_hash: str = ""
    published_at: date | None = None
    excluded: bool = False

    @field_validator("published_at", mode="before")
    @classmethod
    def _date_from_timestamp(cls, value: Any) -> Any:
        """Reduce CMS timestamps (``2024-05-01T10:30:00Z``) to their UTC date."""
        if isinstance(value, str) and len(value.strip()) > 10:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc)  # noqa: UP017
            return value.date()
        return value

    @model_validator(mode="before")
    @classmethod
    def _fill_content_hash(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("content_hash"):
            data = dict(data)
            data["content_hash"] = compute_content_hash(
                str(data.get("title", "")),
                str(data.get("text", "")),
                list(data.get("headings") or []),
            )
        return data

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class Document(BaseModel):
    """Index-side record for one content item."""

    model_config = ConfigDict(frozen=True)

    doc_id: int
    content_id: str
    content_type: str
    title: str = ""
    url: str = ""
    content_hash: str
    status: DocumentStatus = DocumentStatus.PENDING
    chunk_count: int = 0
    published_at: date | None = None
    last_error: str | None = None
    indexed_at: datetime | None = None
    pending_since: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ChunkDescriptor(BaseModel):
    """Chunker output: one chunk ready for persistence and embedding."""

    model_config = ConfigDict(frozen=True)

    chunk_index: int = Field(ge=0)
    anchor: str
    heading_path: list[str] = Field(default_factory=list)
    text: str
    hash: str
    start_offset: int = Field(ge=0)
    end_offset: int = Field(ge=0)
    token_estimate: int = Field(ge=0)
    overlap_tokens: int = Field(default=0, ge=0)


class Chunk(BaseModel):
    """A persisted chunk row.

    ``superseded_at`` is set when a re-chunk no longer produces this hash;
    superseded rows are deleted (with their vectors) by Cleanup.
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: int
    doc_id: int
    chunk_index: int
    anchor: str
    heading_path: list[str] = Field(default_factory=list)
    text: str
    hash: str
    start_offset: int = 0
    end_offset: int = 0
    token_estimate: int = 0
    embedded_at: datetime | None = None
    embed_attempts: int = 0
    embed_error: str | None = None
    superseded_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class ChunkDiff(BaseModel):
    """Result of applying freshly chunked descriptors to stored rows."""

    model_config = ConfigDict(frozen=True)

    kept: int = 0
    inserted: int = 0
    superseded_ids: list[int] = Field(default_factory=list)


class ChunkWithDocument(BaseModel):
    """Chunk joined with its owning document.

    Used for search results and as the unit of work of the embed phase.
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: int
    doc_id: int
    content_id: str
    content_type: str
    title: str
    url: str
    anchor: str
    heading_path: list[str] = Field(default_factory=list)
    text: str
    token_estimate: int = 0
    published_at: date | None = None
    embed_attempts: int = 0


# ---------------------------------------------------------------------------
# Embeddings / vectors
# ---------------------------------------------------------------------------

class EmbeddingUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    total_tokens: int = 0


class EmbeddingResult(BaseModel):
    """Vectors returned by one embedding call, positionally aligned with input."""

    model_config = ConfigDict(frozen=True)

    vectors: list[list[float]]
    dims: int
    model: str
    usage: EmbeddingUsage = Field(default_factory=EmbeddingUsage)


class VectorMetadata(BaseModel):
    """Filterable attributes stored next to each vector."""

    model_config = ConfigDict(frozen=True)

    doc_id: int
    content_id: str
    content_type: str = ""
    published_at: date | None = None
    provider: str = ""
    model: str = ""


class VectorRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunk_id: int
    vector: list[float]
    dims: int
    metadata: VectorMetadata
    created_at: datetime = Field(default_factory=_utcnow)


class VectorMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunk_id: int
    doc_id: int
    content_id: str
    score: float


class VectorSearchResult(BaseModel):
    """Ranked matches plus scan accounting.

    ``total_candidates`` counts rows that passed the filters;
    ``total_scanned`` counts rows actually scored.  ``truncated`` is True
    when the scan cap stopped short of the candidate set.
    """

    model_config = ConfigDict(frozen=True)

    matches: list[VectorMatch] = Field(default_factory=list)
    total_scanned: int = 0
    total_candidates: int = 0
    truncated: bool = False
