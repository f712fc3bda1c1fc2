"""IndexUpsert: promote fully embedded documents to ``indexed``."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from kbindex.models.kb import Document, DocumentStatus
from kbindex.models.pipeline import BatchOutcome, PipelinePhase, RunOptions
from kbindex.models.search import SearchFilters
from kbindex.pipeline.phases.base import BasePhase, int_cursor
from kbindex.utils.errors import InvariantError, KnowledgeBaseError

_COMPLETED = "completed"
_FAILED = "failed"
_WAITING = "waiting"


class IndexUpsertPhase(BasePhase):
    """Check every chunked document's vector coverage.

    - all live chunks have a vector: ``indexed``
    - some are missing: chunks that claim an embedding but have no vector
      are reset for the next embed pass, and the document waits unless it
      has been pending longer than ``pending_timeout_hours`` (then ``error``)
    - no live chunks at all: integrity violation, ``error``
    """

    phase = PipelinePhase.INDEX_UPSERT

    async def count_total(self, config: RunOptions) -> int:
        return await self._ctx.documents.count_by_status(DocumentStatus.CHUNKED, config)

    async def run_batch(
        self, config: RunOptions, cursor: str | None, batch_size: int
    ) -> BatchOutcome:
        documents = await self._ctx.documents.list_by_status(
            DocumentStatus.CHUNKED, config, after_id=int_cursor(cursor), limit=batch_size
        )
        if not documents:
            return BatchOutcome(next_cursor=cursor, done=True)

        tally = {_COMPLETED: 0, _FAILED: 0, _WAITING: 0}
        for document in documents:
            try:
                tally[await self._finalize(document)] += 1
            except InvariantError as exc:
                tally[_FAILED] += 1
                await self._ctx.documents.mark_status(
                    document.doc_id, DocumentStatus.ERROR, error=str(exc)
                )
                self._logger.error(
                    "index_invariant_violated",
                    doc_id=document.doc_id,
                    content_id=document.content_id,
                    error=str(exc),
                )
            except KnowledgeBaseError as exc:
                tally[_FAILED] += 1
                self._logger.error(
                    "index_upsert_failed",
                    doc_id=document.doc_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        return BatchOutcome(
            processed=len(documents),
            completed=tally[_COMPLETED],
            failed=tally[_FAILED],
            skipped=tally[_WAITING],
            indexed=tally[_COMPLETED],
            next_cursor=str(documents[-1].doc_id),
            done=len(documents) < batch_size,
        )

    async def _finalize(self, document: Document) -> str:
        chunks = await self._ctx.chunks.live_chunks(document.doc_id)
        if not chunks:
            raise InvariantError(
                message=f"Document {document.doc_id} reached indexing with zero chunks",
                provider_name="index_upsert",
            )

        chunk_ids = [chunk.chunk_id for chunk in chunks]
        vectorized = await self._ctx.vector_index.count(SearchFilters(chunk_ids=chunk_ids))
        if vectorized == len(chunk_ids):
            await self._ctx.documents.mark_status(
                document.doc_id,
                DocumentStatus.INDEXED,
                chunk_count=len(chunk_ids),
                indexed_at=datetime.now(tz=timezone.utc),  # noqa: UP017
            )
            self._logger.info("document_indexed", doc_id=document.doc_id, chunks=len(chunk_ids))
            return _COMPLETED

        lost = [
            chunk.chunk_id
            for chunk in chunks
            if chunk.embedded_at is not None
            and not await self._ctx.vector_index.exists(chunk.chunk_id)
        ]
        if lost:
            await self._ctx.chunks.reset_embedded(lost)
            self._logger.warning(
                "embedded_chunks_missing_vectors", doc_id=document.doc_id, chunk_ids=lost
            )

        if self._timed_out(document):
            await self._ctx.documents.mark_status(
                document.doc_id,
                DocumentStatus.ERROR,
                error=(
                    f"Only {vectorized} of {len(chunk_ids)} chunks embedded after "
                    f"{self._ctx.settings.pending_timeout_hours}h"
                ),
            )
            self._logger.warning(
                "document_pending_timeout",
                doc_id=document.doc_id,
                vectorized=vectorized,
                chunks=len(chunk_ids),
            )
            return _FAILED
        return _WAITING

    def _timed_out(self, document: Document) -> bool:
        if document.pending_since is None:
            return False
        pending_since = document.pending_since
        if pending_since.tzinfo is None:
            pending_since = pending_since.replace(tzinfo=timezone.utc)  # noqa: UP017
        limit = timedelta(hours=self._ctx.settings.pending_timeout_hours)
        return datetime.now(tz=timezone.utc) - pending_since > limit  # noqa: UP017
