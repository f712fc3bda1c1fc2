"""ChunkBuild: chunk pending documents and apply the hash diff."""

from __future__ import annotations

from kbindex.models.kb import Document, DocumentStatus
from kbindex.models.pipeline import BatchOutcome, PipelinePhase, RunOptions
from kbindex.pipeline.phases.base import BasePhase, int_cursor
from kbindex.utils.errors import KnowledgeBaseError


class ChunkBuildPhase(BasePhase):
    phase = PipelinePhase.CHUNK_BUILD

    async def count_total(self, config: RunOptions) -> int:
        return await self._ctx.documents.count_by_status(DocumentStatus.PENDING, config)

    async def run_batch(
        self, config: RunOptions, cursor: str | None, batch_size: int
    ) -> BatchOutcome:
        documents = await self._ctx.documents.list_by_status(
            DocumentStatus.PENDING, config, after_id=int_cursor(cursor), limit=batch_size
        )
        if not documents:
            return BatchOutcome(next_cursor=cursor, done=True)

        completed = failed = skipped = 0
        for document in documents:
            try:
                chunked = await self._chunk_one(document)
            except (KnowledgeBaseError, ValueError) as exc:
                failed += 1
                await self._ctx.documents.mark_status(
                    document.doc_id, DocumentStatus.ERROR, error=f"Chunking failed: {exc}"
                )
                self._logger.error(
                    "chunk_build_failed",
                    doc_id=document.doc_id,
                    content_id=document.content_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if chunked:
                completed += 1
            else:
                skipped += 1

        return BatchOutcome(
            processed=len(documents),
            completed=completed,
            failed=failed,
            skipped=skipped,
            next_cursor=str(documents[-1].doc_id),
            done=len(documents) < batch_size,
        )

    async def _chunk_one(self, document: Document) -> bool:
        item = await self._ctx.content_source.get(document.content_id)
        if item is None:
            return False

        descriptors = self._ctx.chunker.chunk(item.text, item.headings, doc_key=item.content_id)
        if not descriptors:
            await self._ctx.documents.mark_status(
                document.doc_id, DocumentStatus.EXCLUDED, chunk_count=0
            )
            await self._ctx.chunks.delete_for_document(document.doc_id)
            await self._ctx.vector_index.delete_for_document(document.doc_id)
            return False

        diff = await self._ctx.chunks.apply_descriptors(document.doc_id, descriptors)
        removed = await self._ctx.vector_index.delete_many(diff.superseded_ids)
        self._logger.info(
            "document_chunked",
            doc_id=document.doc_id,
            chunk_count=len(descriptors),
            kept=diff.kept,
            inserted=diff.inserted,
            superseded=len(diff.superseded_ids),
            vectors_removed=removed,
        )
        return True
