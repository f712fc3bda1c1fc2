"""DocumentBuild: sync content items into document rows."""

from __future__ import annotations

from kbindex.models.kb import ContentItem, Document, DocumentStatus
from kbindex.models.pipeline import BatchOutcome, PipelinePhase, RunOptions
from kbindex.pipeline.phases.base import BasePhase
from kbindex.utils.errors import KnowledgeBaseError


def metadata_changed(document: Document, item: ContentItem) -> bool:
    """True when citation or filter fields differ between *document* and *item*."""
    return (
        document.content_type != item.content_type
        or document.title != item.title
        or document.url != item.url
        or document.published_at != item.published_at
    )


class DocumentBuildPhase(BasePhase):
    """Create, refresh or exclude the document for each content item.

    - excluded or empty item: document marked ``excluded``, chunks and
      vectors removed (skipped)
    - unchanged hash: skipped unless the run is forced; a changed title,
      url, type or publish date is still copied onto the document and
      its vectors
    - new or changed hash: document (re)set to ``pending`` (completed)
    """

    phase = PipelinePhase.DOCUMENT_BUILD

    async def count_total(self, config: RunOptions) -> int:
        return await self._ctx.content_source.count(config)

    async def run_batch(
        self, config: RunOptions, cursor: str | None, batch_size: int
    ) -> BatchOutcome:
        ids = await self._ctx.content_source.list_ids(config, after=cursor, limit=batch_size)
        if not ids:
            return BatchOutcome(next_cursor=cursor, done=True)

        completed = failed = skipped = 0
        for content_id in ids:
            try:
                outcome = await self._build_one(content_id, config.force)
            except KnowledgeBaseError as exc:
                failed += 1
                self._logger.error(
                    "document_build_failed",
                    content_id=content_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if outcome:
                completed += 1
            else:
                skipped += 1

        return BatchOutcome(
            processed=len(ids),
            completed=completed,
            failed=failed,
            skipped=skipped,
            next_cursor=ids[-1],
            done=len(ids) < batch_size,
        )

    async def _build_one(self, content_id: str, force: bool) -> bool:
        """Return True when the document was created or queued for re-chunking."""
        item = await self._ctx.content_source.get(content_id)
        if item is None:
            # Removed between listing and reading; Cleanup drops the document.
            return False

        existing = await self._ctx.documents.get_by_content_id(content_id)
        if item.excluded or item.is_empty:
            await self._exclude(item, existing)
            return False

        retagged = existing is not None and metadata_changed(existing, item)
        if (
            existing is not None
            and existing.content_hash == item.content_hash
            and existing.status != DocumentStatus.EXCLUDED
            and not force
        ):
            if retagged:
                await self._ctx.documents.refresh_metadata(item)
                await self._sync_vector_metadata(existing.doc_id, item)
            return False

        document = await self._ctx.documents.upsert_from_content(item, DocumentStatus.PENDING)
        if retagged:
            # Unchanged chunks keep their vectors; only the filter columns move.
            await self._sync_vector_metadata(document.doc_id, item)
        self._logger.debug(
            "document_pending",
            doc_id=document.doc_id,
            content_id=content_id,
            changed=existing is not None,
        )
        return True

    async def _sync_vector_metadata(self, doc_id: int, item: ContentItem) -> None:
        updated = await self._ctx.vector_index.update_document_metadata(
            doc_id, item.content_type, item.published_at
        )
        self._logger.info(
            "document_metadata_refreshed",
            doc_id=doc_id,
            content_id=item.content_id,
            vectors_updated=updated,
        )

    async def _exclude(self, item: ContentItem, existing: Document | None) -> None:
        if (
            existing is not None
            and existing.status == DocumentStatus.EXCLUDED
            and existing.content_hash == item.content_hash
        ):
            return
        document = await self._ctx.documents.upsert_from_content(item, DocumentStatus.EXCLUDED)
        removed_chunks = await self._ctx.chunks.delete_for_document(document.doc_id)
        removed_vectors = await self._ctx.vector_index.delete_for_document(document.doc_id)
        self._logger.info(
            "document_excluded",
            doc_id=document.doc_id,
            content_id=item.content_id,
            empty=item.is_empty,
            chunks_removed=len(removed_chunks),
            vectors_removed=removed_vectors,
        )
