"""Common shape of a pipeline phase.

A phase is a pure batch step ``(config, cursor, batch_size) -> BatchOutcome``.
It selects work by persisted row status, so running the same batch twice
is harmless; the cursor only skips rows already looked at in this pass.
Scheduling, retries and progress accounting live in the orchestrator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar

import structlog

from kbindex.config.settings import Settings
from kbindex.interfaces.content_source import IContentSource
from kbindex.interfaces.embedding_provider import IEmbeddingProvider
from kbindex.interfaces.vector_index import IVectorIndex
from kbindex.models.pipeline import BatchOutcome, PipelinePhase, RunOptions
from kbindex.providers.metadata import SQLiteChunkRepository, SQLiteDocumentRepository
from kbindex.services.ingestion.chunker import Chunker
from kbindex.utils.logging import get_logger


@dataclass(frozen=True)
class PhaseContext:
    """Collaborators shared by every phase."""

    settings: Settings
    content_source: IContentSource
    documents: SQLiteDocumentRepository
    chunks: SQLiteChunkRepository
    vector_index: IVectorIndex
    embedding_provider: IEmbeddingProvider
    chunker: Chunker


class BasePhase(ABC):
    """One resumable stage of the indexing run."""

    phase: ClassVar[PipelinePhase]

    def __init__(self, context: PhaseContext) -> None:
        self._ctx = context
        self._logger: structlog.BoundLogger = get_logger(__name__)

    @abstractmethod
    async def count_total(self, config: RunOptions) -> int:
        """Number of items this phase expects to touch for *config*."""

    @abstractmethod
    async def run_batch(
        self, config: RunOptions, cursor: str | None, batch_size: int
    ) -> BatchOutcome:
        """Process up to *batch_size* items after *cursor*."""

    async def abandon_batch(
        self, config: RunOptions, cursor: str | None, batch_size: int, error: str
    ) -> BatchOutcome:
        """Give up on the batch at *cursor* after repeated rate limiting.

        Only phases that return ``retry_after`` need to override this.
        """
        return BatchOutcome(next_cursor=cursor, error=error)


def int_cursor(cursor: str | None) -> int | None:
    """Parse a cursor holding a numeric row id."""
    return int(cursor) if cursor else None
