"""kbindex domain models, re-exporting all public model classes.

Submodules by concern:
    - kb.py       : content items, documents, chunks, embeddings, vectors
    - pipeline.py : phases, run options, progress counters, run state, jobs
    - search.py   : search filters, results, responses, index stats
"""

from __future__ import annotations

from kbindex.models.kb import (
    Chunk,
    ChunkDescriptor,
    ChunkDiff,
    ChunkWithDocument,
    ContentItem,
    Document,
    DocumentStatus,
    EmbeddingResult,
    EmbeddingUsage,
    Heading,
    VectorMatch,
    VectorMetadata,
    VectorRecord,
    VectorSearchResult,
)
from kbindex.models.pipeline import (
    BatchOutcome,
    JobStatus,
    PhaseProgress,
    PipelinePhase,
    PipelineState,
    PipelineStatus,
    ProgressCounters,
    QueuedJob,
    RunOptions,
    RunScope,
    RunStatus,
)
from kbindex.models.search import (
    IndexStats,
    SearchFilters,
    SearchResponse,
    SearchResult,
)

__all__ = [
    # kb
    "Chunk",
    "ChunkDescriptor",
    "ChunkDiff",
    "ChunkWithDocument",
    "ContentItem",
    "Document",
    "DocumentStatus",
    "EmbeddingResult",
    "EmbeddingUsage",
    "Heading",
    "VectorMatch",
    "VectorMetadata",
    "VectorRecord",
    "VectorSearchResult",
    # pipeline
    "BatchOutcome",
    "JobStatus",
    "PhaseProgress",
    "PipelinePhase",
    "PipelineState",
    "PipelineStatus",
    "ProgressCounters",
    "QueuedJob",
    "RunOptions",
    "RunScope",
    "RunStatus",
    # search
    "IndexStats",
    "SearchFilters",
    "SearchResponse",
    "SearchResult",
]
