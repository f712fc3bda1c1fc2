"""Queue worker that claims due jobs and hands them to the pipeline.

Several workers may share one queue; claiming is atomic, and every
handler is idempotent because delivery is at-least-once.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from kbindex.interfaces.job_queue import IJobQueue
from kbindex.models.pipeline import QueuedJob
from kbindex.pipeline.orchestrator import KnowledgeBasePipeline
from kbindex.utils.errors import KnowledgeBaseError
from kbindex.utils.logging import get_logger


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


class PipelineWorker:
    """Claim-and-dispatch loop.

    Parameters
    ----------
    pipeline:
        The orchestrator whose :meth:`~KnowledgeBasePipeline.handle_job`
        runs each job.
    job_queue:
        Queue to claim from.
    poll_interval:
        Seconds to sleep in :meth:`run_forever` when nothing is due.
    claim_limit:
        Jobs claimed per poll.
    clock:
        Returns "now" for claiming; tests pass a clock in the future to
        run delayed jobs immediately.
    stale_after:
        Jobs left `running` longer than this by a dead worker are put back
        to pending when :meth:`run_forever` starts.
    """

    def __init__(
        self,
        pipeline: KnowledgeBasePipeline,
        job_queue: IJobQueue,
        poll_interval: float = 2.0,
        claim_limit: int = 1,
        clock: Callable[[], datetime] = _utcnow,
        stale_after: timedelta = timedelta(minutes=30),
    ) -> None:
        self._pipeline = pipeline
        self._queue = job_queue
        self._poll_interval = poll_interval
        self._claim_limit = claim_limit
        self._clock = clock
        self._stale_after = stale_after
        self._logger: structlog.BoundLogger = get_logger(__name__)

    async def run_once(self) -> int:
        """Claim and run due jobs once.  Returns how many were claimed."""
        jobs = await self._queue.claim_due(limit=self._claim_limit, now=self._clock())
        for job in jobs:
            await self._execute(job)
        return len(jobs)

    async def run_until_idle(self, max_jobs: int | None = None) -> int:
        """Run jobs until none are due (or *max_jobs* ran).  Returns jobs run."""
        executed = 0
        while max_jobs is None or executed < max_jobs:
            claimed = await self.run_once()
            if claimed == 0:
                break
            executed += claimed
        self._logger.info("worker_idle", jobs_run=executed)
        return executed

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Poll the queue until *stop_event* is set."""
        requeued = await self._queue.requeue_stale(self._stale_after)
        self._logger.info("worker_started", poll_interval=self._poll_interval, requeued=requeued)
        while stop_event is None or not stop_event.is_set():
            if await self.run_once() == 0:
                await asyncio.sleep(self._poll_interval)
        self._logger.info("worker_stopped")

    async def _execute(self, job: QueuedJob) -> None:
        payload = job.payload
        try:
            await self._pipeline.handle_job(job)
        except KnowledgeBaseError as exc:
            self._logger.error(
                "job_failed",
                job_id=job.job_id,
                job_name=job.job_name,
                phase=payload.get("phase"),
                item_id=payload.get("content_id") or payload.get("cursor"),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._queue.fail(job.job_id, str(exc))
            await self._recover(job, exc)
            return
        except Exception as exc:
            self._logger.exception(
                "job_failed",
                job_id=job.job_id,
                job_name=job.job_name,
                phase=payload.get("phase"),
                item_id=payload.get("content_id") or payload.get("cursor"),
                error_type=type(exc).__name__,
            )
            await self._queue.fail(job.job_id, f"{type(exc).__name__}: {exc}")
            await self._recover(job, exc)
            return
        await self._queue.complete(job.job_id)

    async def _recover(self, job: QueuedJob, error: BaseException) -> None:
        try:
            await self._pipeline.handle_job_failure(job, error)
        except KnowledgeBaseError as exc:
            self._logger.error(
                "job_recovery_failed",
                job_id=job.job_id,
                job_name=job.job_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
