"""Cleanup: reconcile the index with the content source and compute stats."""

from __future__ import annotations

from kbindex.models.kb import Document, DocumentStatus
from kbindex.models.pipeline import BatchOutcome, PipelinePhase, RunOptions
from kbindex.pipeline.phases.base import BasePhase, int_cursor
from kbindex.pipeline.stats import compute_index_stats
from kbindex.utils.errors import KnowledgeBaseError

_PURGE_BATCH = 500


class CleanupPhase(BasePhase):
    """Per document, purge what the earlier phases left behind.

    - superseded chunks (the stale side of a re-chunk) and their vectors
    - chunks and vectors of excluded documents
    - documents whose content item no longer exists, with their data

    The final batch also sweeps orphan chunks and vectors across the
    whole index and attaches fresh statistics to the outcome.
    """

    phase = PipelinePhase.CLEANUP

    async def count_total(self, config: RunOptions) -> int:
        return await self._ctx.documents.count(config)

    async def run_batch(
        self, config: RunOptions, cursor: str | None, batch_size: int
    ) -> BatchOutcome:
        documents = await self._ctx.documents.list_all(
            config, after_id=int_cursor(cursor), limit=batch_size
        )

        completed = failed = 0
        for document in documents:
            try:
                await self._clean_document(document)
                completed += 1
            except KnowledgeBaseError as exc:
                failed += 1
                self._logger.error(
                    "cleanup_document_failed",
                    doc_id=document.doc_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        next_cursor = str(documents[-1].doc_id) if documents else cursor
        if len(documents) == batch_size:
            return BatchOutcome(
                processed=len(documents),
                completed=completed,
                failed=failed,
                next_cursor=next_cursor,
            )

        await self.sweep_orphans()
        stats = await compute_index_stats(
            self._ctx.documents, self._ctx.chunks, self._ctx.vector_index
        )
        self._logger.info("cleanup_stats", **stats)
        return BatchOutcome(
            processed=len(documents),
            completed=completed,
            failed=failed,
            next_cursor=next_cursor,
            done=True,
            stats=stats,
        )

    async def _clean_document(self, document: Document) -> None:
        vectors = self._ctx.vector_index

        if not await self._ctx.content_source.exists(document.content_id):
            await self.remove_document(document)
            return

        if document.status == DocumentStatus.EXCLUDED:
            removed_chunks = await self._ctx.chunks.delete_for_document(document.doc_id)
            removed_vectors = await vectors.delete_for_document(document.doc_id)
            if removed_chunks or removed_vectors:
                self._logger.info(
                    "excluded_document_purged",
                    doc_id=document.doc_id,
                    chunks=len(removed_chunks),
                    vectors=removed_vectors,
                )
            return

        superseded: list[int] = []
        removed = 0
        while True:
            batch = await self._ctx.chunks.delete_superseded(document.doc_id, limit=_PURGE_BATCH)
            if not batch:
                break
            superseded.extend(batch)
            removed += await vectors.delete_many(batch)
        if superseded:
            self._logger.info(
                "superseded_chunks_purged",
                doc_id=document.doc_id,
                chunks=len(superseded),
                vectors=removed,
            )

    async def remove_document(self, document: Document) -> None:
        """Delete *document* together with its chunks and vectors."""
        removed_vectors = await self._ctx.vector_index.delete_for_document(document.doc_id)
        removed_chunks = await self._ctx.chunks.delete_for_document(document.doc_id)
        await self._ctx.documents.delete(document.doc_id)
        self._logger.info(
            "document_removed",
            doc_id=document.doc_id,
            content_id=document.content_id,
            chunks=len(removed_chunks),
            vectors=removed_vectors,
        )

    async def sweep_orphans(self) -> dict[str, int]:
        """Delete chunks without a document and vectors without a chunk row."""
        orphan_chunks = await self._ctx.chunks.delete_orphans()
        known = await self._ctx.chunks.all_chunk_ids()
        stored = set(await self._ctx.vector_index.chunk_ids())
        removed_vectors = await self._ctx.vector_index.delete_many(sorted(stored - known))

        if orphan_chunks or removed_vectors:
            self._logger.warning(
                "orphans_removed", chunks=len(orphan_chunks), vectors=removed_vectors
            )
        return {"chunks": len(orphan_chunks), "vectors": removed_vectors}
