"""EmbedChunks: embed live chunks that have no vector yet."""

from __future__ import annotations

from kbindex.models.kb import ChunkWithDocument, VectorMetadata
from kbindex.models.pipeline import BatchOutcome, PipelinePhase, RunOptions
from kbindex.pipeline.phases.base import BasePhase, int_cursor
from kbindex.utils.errors import ProviderError, RateLimitError


class EmbedChunksPhase(BasePhase):
    """One provider call per batch; vectors are upserted by chunk id.

    A rate limit leaves the cursor where it was and reports
    ``retry_after``.  Any other provider failure charges one attempt to
    every chunk in the batch; chunks that reach ``embed_max_attempts``
    drop out of selection until ``retry_failed_chunks`` resets them.
    """

    phase = PipelinePhase.EMBED_CHUNKS

    async def count_total(self, config: RunOptions) -> int:
        return await self._ctx.chunks.count_needing_embedding(
            config, max_attempts=self._ctx.settings.embed_max_attempts
        )

    def _limit(self, batch_size: int) -> int:
        return max(1, min(batch_size, self._ctx.settings.embed_batch_size))

    async def _select(
        self, config: RunOptions, cursor: str | None, batch_size: int
    ) -> list[ChunkWithDocument]:
        return await self._ctx.chunks.list_needing_embedding(
            config,
            after_id=int_cursor(cursor),
            limit=self._limit(batch_size),
            max_attempts=self._ctx.settings.embed_max_attempts,
        )

    async def run_batch(
        self, config: RunOptions, cursor: str | None, batch_size: int
    ) -> BatchOutcome:
        candidates = await self._select(config, cursor, batch_size)
        if not candidates:
            return BatchOutcome(next_cursor=cursor, done=True)

        provider = self._ctx.embedding_provider
        next_cursor = str(candidates[-1].chunk_id)
        done = len(candidates) < self._limit(batch_size)
        try:
            result = await provider.embed([chunk.text for chunk in candidates])
            if len(result.vectors) != len(candidates):
                raise ProviderError(
                    message=(
                        f"Expected {len(candidates)} vectors, received {len(result.vectors)}"
                    ),
                    provider_name=provider.get_provider_name(),
                    retryable=False,
                )
        except RateLimitError as exc:
            self._logger.warning(
                "embed_batch_rate_limited",
                cursor=cursor,
                retry_after=exc.retry_after,
                batch_size=len(candidates),
            )
            return BatchOutcome(
                next_cursor=cursor, retry_after=float(exc.retry_after), error=str(exc)
            )
        except ProviderError as exc:
            return await self._record_failure(candidates, str(exc), next_cursor, done)

        for chunk, vector in zip(candidates, result.vectors):
            await self._ctx.vector_index.store(
                chunk.chunk_id,
                vector,
                VectorMetadata(
                    doc_id=chunk.doc_id,
                    content_id=chunk.content_id,
                    content_type=chunk.content_type,
                    published_at=chunk.published_at,
                    provider=provider.get_provider_name(),
                    model=result.model,
                ),
            )
        await self._ctx.chunks.mark_embedded([chunk.chunk_id for chunk in candidates])

        self._logger.info(
            "embed_batch_stored",
            count=len(candidates),
            dims=result.dims,
            model=result.model,
            total_tokens=result.usage.total_tokens,
        )
        return BatchOutcome(
            processed=len(candidates),
            completed=len(candidates),
            next_cursor=next_cursor,
            done=done,
        )

    async def abandon_batch(
        self, config: RunOptions, cursor: str | None, batch_size: int, error: str
    ) -> BatchOutcome:
        candidates = await self._select(config, cursor, batch_size)
        if not candidates:
            return BatchOutcome(next_cursor=cursor, done=True)
        return await self._record_failure(
            candidates,
            error,
            str(candidates[-1].chunk_id),
            len(candidates) < self._limit(batch_size),
        )

    async def _record_failure(
        self,
        candidates: list[ChunkWithDocument],
        error: str,
        next_cursor: str,
        done: bool,
    ) -> BatchOutcome:
        max_attempts = self._ctx.settings.embed_max_attempts
        await self._ctx.chunks.record_embed_failure([c.chunk_id for c in candidates], error)
        exhausted = [c.chunk_id for c in candidates if c.embed_attempts + 1 >= max_attempts]
        self._logger.error(
            "embed_batch_failed",
            count=len(candidates),
            exhausted=len(exhausted),
            error=error,
        )
        return BatchOutcome(
            processed=len(candidates),
            failed=len(candidates),
            next_cursor=next_cursor,
            done=done,
            error=error,
        )
