"""Central orchestrator for the five-phase indexing pipeline.

Phases run in a fixed order (DocumentBuild → ChunkBuild → EmbedChunks →
IndexUpsert → Cleanup).  Every unit of work is a job on the durable
queue: a phase job runs one batch through the phase handler, records the
outcome in the persisted :class:`PipelineState`, then either schedules
the next batch with the new cursor or advances the phase.

State handling follows the frozen-model pattern: each transition builds a
new ``PipelineState`` with ``model_copy(update={...})``.  The new value is
written with a compare-and-set against the version that was read; on a
conflict the transition is re-applied to the fresh state, so concurrent
workers never lose each other's counter updates.

Jobs carry the ``run_id`` they were scheduled for.  A job whose run id or
phase no longer matches the persisted state (the run was stopped,
restarted or already advanced) is discarded without side effects.
"""

from __future__ import annotations

import math
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from kbindex.interfaces.job_queue import IJobQueue
from kbindex.interfaces.state_store import IStateStore
from kbindex.models.pipeline import (
    BatchOutcome,
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
from kbindex.pipeline.batch_size_manager import BatchSizeManager
from kbindex.pipeline.phases import BasePhase, CleanupPhase, PhaseContext, build_phases
from kbindex.pipeline.progress_tracker import ProgressTracker
from kbindex.pipeline.stats import compute_index_stats
from kbindex.utils.errors import (
    PipelineAlreadyRunningError,
    PipelineError,
    ValidationError,
)
from kbindex.utils.logging import bind_job_context, clear_job_context, get_logger

STATE_KEY = "kb_pipeline_state"
QUEUE_GROUP = "kbindex"
SINGLE_ITEM_JOB = "kb_index_single_item"
REMOVE_ITEM_JOB = "kb_remove_item"

_MAX_CAS_ATTEMPTS = 20
_MAX_JOB_RETRIES = 3
_JOB_RETRY_DELAY_SECONDS = 30
_SINGLE_ITEM_PHASES = (
    PipelinePhase.DOCUMENT_BUILD,
    PipelinePhase.CHUNK_BUILD,
    PipelinePhase.EMBED_CHUNKS,
    PipelinePhase.INDEX_UPSERT,
)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


def _overall_percentage(phase: PipelinePhase, fraction: float) -> int:
    phases = len(PipelinePhase)
    return min(100, int((phase.index + max(0.0, min(1.0, fraction))) / phases * 100))


class KnowledgeBasePipeline:
    """Phase state machine driving content through the index.

    Parameters
    ----------
    context:
        Collaborators shared with the phase handlers (settings, content
        source, repositories, vector index, embedding provider, chunker).
    state_store:
        Versioned store holding the single persisted run state.
    job_queue:
        Durable queue the phase and per-item jobs are scheduled on.
    progress_tracker:
        Optional in-process listener hub notified on every state change.
    """

    def __init__(
        self,
        context: PhaseContext,
        state_store: IStateStore,
        job_queue: IJobQueue,
        progress_tracker: ProgressTracker | None = None,
    ) -> None:
        self._ctx = context
        self._settings = context.settings
        self._state_store = state_store
        self._queue = job_queue
        self._tracker = progress_tracker or ProgressTracker()
        self._phases: dict[PipelinePhase, BasePhase] = build_phases(context)
        cleanup = self._phases[PipelinePhase.CLEANUP]
        assert isinstance(cleanup, CleanupPhase)
        self._cleanup = cleanup
        self._logger: structlog.BoundLogger = get_logger(__name__)

    @property
    def progress_tracker(self) -> ProgressTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # State persistence
    # ------------------------------------------------------------------

    async def load_state(self) -> tuple[PipelineState, int | None]:
        """Return the persisted state and its version (None when never written)."""
        stored = await self._state_store.get(STATE_KEY)
        if stored is None:
            return PipelineState(), None
        return PipelineState.model_validate_json(stored.value), stored.version

    async def _mutate(
        self, transition: Callable[[PipelineState], PipelineState | None]
    ) -> PipelineState | None:
        """Apply *transition* with compare-and-set, retrying on conflicts.

        *transition* returns the new state, or None to leave the stored
        state untouched (e.g. the run moved on).  It may raise to abort.
        """
        for attempt in range(1, _MAX_CAS_ATTEMPTS + 1):
            state, version = await self.load_state()
            updated = transition(state)
            if updated is None:
                return None
            updated = updated.model_copy(update={"last_activity": _utcnow()})
            if await self._state_store.compare_and_set(
                STATE_KEY, version, updated.model_dump_json()
            ):
                await self._tracker.update(updated)
                return updated
            self._logger.debug("pipeline_state_conflict", attempt=attempt)

        raise PipelineError(
            message=f"Could not persist pipeline state after {_MAX_CAS_ATTEMPTS} attempts",
            provider_name="orchestrator",
        )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def start(self, options: RunOptions | None = None) -> PipelineState:
        """Begin a run at the first phase.

        Raises
        ------
        PipelineAlreadyRunningError
            If a run is already active.
        ValidationError
            If the scope is missing its content type or content id.
        """
        options = options or RunOptions()
        if options.scope == RunScope.TYPE and not options.content_type:
            raise ValidationError(message="scope=type requires a content type")
        if options.scope == RunScope.ITEM and not options.content_id:
            raise ValidationError(message="scope=item requires a content id")

        current, _ = await self.load_state()
        if current.is_running:
            raise PipelineAlreadyRunningError()

        first = PipelinePhase.DOCUMENT_BUILD
        total = await self._ctx.content_source.count(options)
        batch_size = options.batch_size or self._settings.pipeline_batch_size
        run_id = uuid.uuid4().hex
        now = _utcnow()

        def begin(state: PipelineState) -> PipelineState:
            if state.is_running:
                raise PipelineAlreadyRunningError()
            return PipelineState(
                run_id=run_id,
                status=RunStatus.RUNNING,
                current_phase=first,
                config=options,
                progress=ProgressCounters(
                    total=total,
                    phase=PhaseProgress(name=first.value, total=total),
                    total_batches=math.ceil(total / batch_size) if total else 0,
                ),
                batch_size=batch_size,
                started_at=now,
            )

        state = await self._mutate(begin)
        assert state is not None
        await self._enqueue_phase(state, first, cursor=None)
        self._logger.info(
            "pipeline_started",
            run_id=run_id,
            scope=options.scope.value,
            content_type=options.content_type,
            content_id=options.content_id,
            force=options.force,
            total=total,
            batch_size=batch_size,
        )
        return state

    async def stop(self) -> PipelineState:
        """Cancel pending jobs and return to idle.

        Work already committed stays.  A batch that is executing right now
        finishes its current unit and then finds the run gone.  Stopping an
        idle pipeline is a no-op.
        """
        state, _ = await self.load_state()
        if not state.is_running:
            self._logger.info("pipeline_stop_noop", status=state.status.value)
            return state

        cancelled = await self._cancel_jobs()

        def halt(current: PipelineState) -> PipelineState | None:
            if not current.is_running:
                return None
            return current.model_copy(
                update={"status": RunStatus.IDLE, "current_phase": None, "cursor": None}
            )

        stopped = await self._mutate(halt)
        self._logger.info("pipeline_stopped", run_id=state.run_id, jobs_cancelled=cancelled)
        return stopped or (await self.load_state())[0]

    async def advance_phase(self, from_phase: PipelinePhase | None = None) -> PipelineState | None:
        """Move to the phase after *from_phase* (default: the current one).

        Completes the run after the last phase.  Returns None when the run
        already moved past *from_phase*.
        """
        state, _ = await self.load_state()
        if not state.is_running or state.current_phase is None:
            return None
        finished = from_phase or state.current_phase
        if state.current_phase != finished:
            return None

        following = finished.next()
        if following is None:
            return await self.complete(from_phase=finished)

        assert state.config is not None
        total = await self.calculate_phase_total(following, state.config)

        def enter(current: PipelineState) -> PipelineState | None:
            if not current.is_running or current.current_phase != finished:
                return None
            batch_size = current.batch_size
            history = current.batch_history
            if self._dynamic_sizing(current):
                # Per-item cost differs between phases, so sizing starts over.
                sizing = BatchSizeManager(batch_size, history)
                batch_size = sizing.reset(self._settings.pipeline_batch_size)
                history = sizing.history
            progress = current.progress.model_copy(
                update={
                    "phase": PhaseProgress(name=following.value, total=total),
                    "percentage": _overall_percentage(following, 0.0),
                    "current_batch": 0,
                    "total_batches": math.ceil(total / batch_size) if total else 0,
                    "eta_seconds": None,
                }
            )
            return current.model_copy(
                update={
                    "current_phase": following,
                    "batch_size": batch_size,
                    "batch_history": history,
                    "cursor": None,
                    "rate_limit_retries": 0,
                    "progress": progress,
                }
            )

        advanced = await self._mutate(enter)
        if advanced is None:
            return None
        await self._enqueue_phase(advanced, following, cursor=None)
        self._logger.info(
            "pipeline_phase_advanced",
            run_id=advanced.run_id,
            from_phase=finished.value,
            to_phase=following.value,
            phase_total=total,
        )
        return advanced

    async def complete(self, from_phase: PipelinePhase | None = None) -> PipelineState | None:
        """Finalize the running run as completed."""

        def finish(current: PipelineState) -> PipelineState | None:
            if not current.is_running:
                return None
            if from_phase is not None and current.current_phase != from_phase:
                return None
            progress = current.progress.model_copy(update={"percentage": 100, "eta_seconds": 0})
            return current.model_copy(
                update={
                    "status": RunStatus.COMPLETED,
                    "current_phase": None,
                    "cursor": None,
                    "progress": progress,
                    "completed_at": _utcnow(),
                }
            )

        completed = await self._mutate(finish)
        if completed is not None:
            self._logger.info(
                "pipeline_completed",
                run_id=completed.run_id,
                indexed=completed.progress.completed,
                failed=completed.progress.failed,
                skipped=completed.progress.skipped,
            )
        return completed

    async def fail(self, reason: str) -> PipelineState | None:
        """Mark the running run failed and cancel its pending jobs."""

        def mark_failed(current: PipelineState) -> PipelineState | None:
            if not current.is_running:
                return None
            return current.model_copy(
                update={
                    "status": RunStatus.FAILED,
                    "failure_reason": reason,
                    "last_error": reason,
                    "completed_at": _utcnow(),
                }
            )

        failed = await self._mutate(mark_failed)
        if failed is not None:
            await self._cancel_jobs()
            self._logger.error(
                "pipeline_failed",
                run_id=failed.run_id,
                phase=failed.current_phase.value if failed.current_phase else None,
                reason=reason,
            )
        return failed

    # ------------------------------------------------------------------
    # Job entry points
    # ------------------------------------------------------------------

    async def handle_job(self, job: QueuedJob) -> None:
        """Dispatch one claimed job to the phase or per-item handler."""
        if job.job_name == SINGLE_ITEM_JOB:
            await self.index_single_item(str(job.payload["content_id"]))
            return
        if job.job_name == REMOVE_ITEM_JOB:
            await self.remove_item(str(job.payload["content_id"]))
            return
        try:
            phase = PipelinePhase(job.job_name)
        except ValueError as exc:
            raise PipelineError(
                message=f"Unknown job name {job.job_name!r}", provider_name="orchestrator"
            ) from exc
        await self._run_phase_job(phase, job.payload)

    async def handle_job_failure(self, job: QueuedJob, error: BaseException) -> None:
        """Reschedule a failed phase job, or fail the run once retries run out."""
        if job.job_name in (SINGLE_ITEM_JOB, REMOVE_ITEM_JOB):
            return
        try:
            phase = PipelinePhase(job.job_name)
        except ValueError:
            return

        state, _ = await self.load_state()
        if not self._job_matches(state, phase, job.payload):
            return

        retries = int(job.payload.get("retries", 0))
        message = f"{type(error).__name__}: {error}"
        if retries >= _MAX_JOB_RETRIES:
            await self.fail(f"Phase {phase.value} failed after {retries} retries: {message}")
            return

        def note(current: PipelineState) -> PipelineState | None:
            if not self._job_matches(current, phase, job.payload):
                return None
            return current.model_copy(update={"last_error": message})

        await self._mutate(note)
        await self._enqueue_phase(
            state,
            phase,
            cursor=job.payload.get("cursor"),
            delay=_JOB_RETRY_DELAY_SECONDS * (retries + 1),
            retries=retries + 1,
        )
        self._logger.warning(
            "phase_job_rescheduled", phase=phase.value, retries=retries + 1, error=message
        )

    async def handle_phase_complete(
        self, phase: PipelinePhase, reported_done: bool = True
    ) -> bool:
        """Advance when *phase* is finished.  Returns True if it advanced.

        A phase is finished when its batch reported nothing left, or when
        completed plus failed items reached the phase total.  The last
        phase always waits for its final batch (it computes statistics).
        """
        state, _ = await self.load_state()
        if not state.is_running or state.current_phase != phase:
            return False

        progress = state.progress.phase
        counted_out = (
            phase.next() is not None
            and progress.total > 0
            and progress.completed + progress.failed >= progress.total
        )
        if not (reported_done or counted_out):
            return False
        await self.advance_phase(from_phase=phase)
        return True

    async def _run_phase_job(self, phase: PipelinePhase, payload: dict[str, Any]) -> None:
        state, _ = await self.load_state()
        if not self._job_matches(state, phase, payload):
            self._logger.info(
                "stale_job_discarded",
                phase=phase.value,
                job_run_id=payload.get("run_id"),
                current_run_id=state.run_id,
                current_phase=state.current_phase.value if state.current_phase else None,
            )
            return

        assert state.config is not None
        cursor = payload.get("cursor")
        handler = self._phases[phase]
        bind_job_context(run_id=state.run_id, phase=phase.value)
        try:
            started = time.monotonic()
            outcome = await handler.run_batch(state.config, cursor, state.batch_size)

            if outcome.retry_after is not None:
                if state.rate_limit_retries < self._settings.embed_rate_limit_max_retries:
                    await self._schedule_rate_limit_retry(state, phase, cursor, outcome)
                    return
                self._logger.warning(
                    "rate_limit_retries_exhausted",
                    retries=state.rate_limit_retries,
                    cursor=cursor,
                )
                outcome = await handler.abandon_batch(
                    state.config, cursor, state.batch_size, outcome.error or "rate limited"
                )

            elapsed = time.monotonic() - started
            updated = await self._record_batch(state.run_id, phase, outcome, elapsed)
            if updated is None:
                return

            self._logger.info(
                "phase_batch_complete",
                processed=outcome.processed,
                completed=outcome.completed,
                failed=outcome.failed,
                skipped=outcome.skipped,
                next_cursor=outcome.next_cursor,
                done=outcome.done,
                duration_ms=round(elapsed * 1000, 1),
            )

            if await self.handle_phase_complete(phase, reported_done=outcome.done):
                return
            await self._enqueue_phase(updated, phase, cursor=outcome.next_cursor)
        finally:
            clear_job_context()

    async def _schedule_rate_limit_retry(
        self,
        state: PipelineState,
        phase: PipelinePhase,
        cursor: str | None,
        outcome: BatchOutcome,
    ) -> None:
        def count_retry(current: PipelineState) -> PipelineState | None:
            if current.run_id != state.run_id or current.current_phase != phase:
                return None
            return current.model_copy(
                update={
                    "rate_limit_retries": current.rate_limit_retries + 1,
                    "last_error": outcome.error,
                }
            )

        updated = await self._mutate(count_retry)
        if updated is None:
            return
        delay = outcome.retry_after or 0.0
        await self._enqueue_phase(updated, phase, cursor=cursor, delay=delay)
        self._logger.warning(
            "phase_batch_rate_limited",
            retry_after=delay,
            retries=updated.rate_limit_retries,
            cursor=cursor,
        )

    async def _record_batch(
        self, run_id: str, phase: PipelinePhase, outcome: BatchOutcome, elapsed: float
    ) -> PipelineState | None:
        """Fold *outcome* into the phase and overall counters."""

        def apply(current: PipelineState) -> PipelineState | None:
            if current.run_id != run_id or not current.is_running:
                return None
            if current.current_phase != phase:
                return None

            phase_progress = current.progress.phase
            completed = phase_progress.completed + outcome.completed
            failed = phase_progress.failed + outcome.failed
            skipped = phase_progress.skipped + outcome.skipped
            processed = completed + failed + skipped
            if phase_progress.total:
                fraction = min(1.0, processed / phase_progress.total)
            else:
                fraction = 1.0 if outcome.done else 0.0

            batch_number = current.progress.current_batch + 1
            average = (
                current.progress.avg_process_time * (batch_number - 1) + elapsed
            ) / batch_number
            remaining_batches = max(0, current.progress.total_batches - batch_number)

            progress = current.progress.model_copy(
                update={
                    "completed": current.progress.completed + outcome.indexed,
                    "failed": current.progress.failed + outcome.failed,
                    "skipped": current.progress.skipped
                    + (outcome.skipped if phase == PipelinePhase.DOCUMENT_BUILD else 0),
                    "percentage": _overall_percentage(phase, fraction),
                    "phase": phase_progress.model_copy(
                        update={
                            "completed": completed,
                            "failed": failed,
                            "skipped": skipped,
                            "percentage": int(fraction * 100),
                        }
                    ),
                    "current_batch": batch_number,
                    "avg_process_time": round(average, 3),
                    "eta_seconds": round(average * remaining_batches) if remaining_batches else 0,
                }
            )

            batch_size = current.batch_size
            history = current.batch_history
            if self._dynamic_sizing(current):
                manager = BatchSizeManager(batch_size, history)
                batch_size = manager.update_from_result(elapsed, outcome.processed)
                history = manager.history

            return current.model_copy(
                update={
                    "progress": progress,
                    "cursor": outcome.next_cursor,
                    "batch_size": batch_size,
                    "batch_history": history,
                    "rate_limit_retries": 0,
                    "last_error": outcome.error or current.last_error,
                    "stats": outcome.stats if outcome.stats is not None else current.stats,
                }
            )

        return await self._mutate(apply)

    # ------------------------------------------------------------------
    # Per-item operations
    # ------------------------------------------------------------------

    async def schedule_single_item(self, content_id: str) -> int:
        """Queue a delayed reindex of one item (e.g. after an edit)."""
        run_at = _utcnow() + timedelta(seconds=self._settings.single_item_delay_seconds)
        job_id = await self._queue.enqueue(
            SINGLE_ITEM_JOB, {"content_id": content_id}, run_at=run_at, group=QUEUE_GROUP
        )
        self._logger.info("single_item_scheduled", content_id=content_id, job_id=job_id)
        return job_id

    async def schedule_item_removal(self, content_id: str) -> int:
        """Queue immediate removal of one item's document, chunks and vectors."""
        job_id = await self._queue.enqueue(
            REMOVE_ITEM_JOB, {"content_id": content_id}, group=QUEUE_GROUP
        )
        self._logger.info("item_removal_scheduled", content_id=content_id, job_id=job_id)
        return job_id

    async def index_single_item(self, content_id: str) -> str | None:
        """Run one item through every phase but Cleanup, inline.

        Returns the resulting document status, or None when the item was
        removed from the source (its index data is deleted instead).
        """
        if not await self._ctx.content_source.exists(content_id):
            await self.remove_item(content_id)
            return None

        config = RunOptions(scope=RunScope.ITEM, content_id=content_id)
        for phase in _SINGLE_ITEM_PHASES:
            handler = self._phases[phase]
            cursor: str | None = None
            while True:
                outcome = await handler.run_batch(
                    config, cursor, self._settings.pipeline_batch_size
                )
                if outcome.retry_after is not None:
                    run_at = _utcnow() + timedelta(seconds=outcome.retry_after)
                    await self._queue.enqueue(
                        SINGLE_ITEM_JOB,
                        {"content_id": content_id},
                        run_at=run_at,
                        group=QUEUE_GROUP,
                    )
                    self._logger.warning(
                        "single_item_rate_limited",
                        content_id=content_id,
                        retry_after=outcome.retry_after,
                    )
                    return None
                if outcome.done or outcome.next_cursor in (None, cursor):
                    break
                cursor = outcome.next_cursor

        document = await self._ctx.documents.get_by_content_id(content_id)
        status = document.status.value if document else None
        self._logger.info("single_item_indexed", content_id=content_id, status=status)
        return status

    async def remove_item(self, content_id: str) -> bool:
        """Delete the document for *content_id* with its chunks and vectors."""
        document = await self._ctx.documents.get_by_content_id(content_id)
        if document is None:
            return False
        await self._cleanup.remove_document(document)
        return True

    async def retry_failed_chunks(self) -> int:
        """Re-arm chunks that exhausted their embedding attempts."""
        reset = await self._ctx.chunks.reset_failed(self._settings.embed_max_attempts)
        self._logger.info("failed_chunks_reset", count=reset)
        return reset

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def get_status(self) -> PipelineStatus:
        state, _ = await self.load_state()
        phase = state.current_phase
        return PipelineStatus(
            status=state.status,
            current_phase=phase,
            phase_number=phase.index + 1 if phase else 0,
            progress=state.progress,
            stats=state.stats,
            config=state.config,
            started_at=state.started_at,
            last_activity=state.last_activity,
            failure_reason=state.failure_reason,
            last_error=state.last_error,
            pending_jobs=await self._queue.pending_count(QUEUE_GROUP),
        )

    async def get_stats(self) -> dict[str, Any]:
        """Fresh index statistics plus a summary of batch sizing."""
        stats = await compute_index_stats(
            self._ctx.documents, self._ctx.chunks, self._ctx.vector_index
        )
        state, _ = await self.load_state()
        sizing = BatchSizeManager(state.batch_size, state.batch_history)
        stats["batch_sizing"] = sizing.get_statistics()
        stats["failed_chunks"] = len(
            await self._ctx.chunks.get_failed_chunks(self._settings.embed_max_attempts)
        )
        return stats

    async def calculate_phase_total(self, phase: PipelinePhase, config: RunOptions) -> int:
        return await self._phases[phase].count_total(config)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _dynamic_sizing(self, state: PipelineState) -> bool:
        """Adaptive sizing applies unless the run pinned an explicit batch size."""
        return (
            self._settings.dynamic_batch_sizing
            and state.config is not None
            and state.config.batch_size is None
        )

    @staticmethod
    def _job_matches(state: PipelineState, phase: PipelinePhase, payload: dict[str, Any]) -> bool:
        return (
            state.is_running
            and state.run_id == payload.get("run_id")
            and state.current_phase == phase
        )

    async def _enqueue_phase(
        self,
        state: PipelineState,
        phase: PipelinePhase,
        cursor: str | None,
        delay: float | None = None,
        retries: int = 0,
    ) -> int:
        payload: dict[str, Any] = {"run_id": state.run_id, "phase": phase.value, "cursor": cursor}
        if retries:
            payload["retries"] = retries
        run_at = _utcnow() + timedelta(seconds=delay) if delay else None
        return await self._queue.enqueue(phase.value, payload, run_at=run_at, group=QUEUE_GROUP)

    async def _cancel_jobs(self) -> int:
        cancelled = 0
        for phase in PipelinePhase.ordered():
            cancelled += await self._queue.cancel_all(phase.value, QUEUE_GROUP)
        for job_name in (SINGLE_ITEM_JOB, REMOVE_ITEM_JOB):
            cancelled += await self._queue.cancel_all(job_name, QUEUE_GROUP)
        return cancelled
