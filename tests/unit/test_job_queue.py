"""Unit tests for the SQLite job queue."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from kbindex.models.pipeline import JobStatus
from kbindex.providers.queue import SQLiteJobQueue
from kbindex.providers.sqlite_support import connect


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


@pytest.fixture()
async def queue(db_path: Path) -> SQLiteJobQueue:
    job_queue = SQLiteJobQueue(db_path)
    await job_queue.initialize()
    return job_queue


async def _status(db_path: Path, job_id: int) -> str:
    async with connect(db_path, "test") as db:
        cursor = await db.execute("SELECT status FROM kb_jobs WHERE job_id = ?", (job_id,))
        return (await cursor.fetchone())["status"]


class TestClaiming:
    async def test_claims_oldest_due_first(self, queue: SQLiteJobQueue) -> None:
        now = _now()
        later = await queue.enqueue("kb_chunk_build", {"n": 2}, run_at=now - timedelta(seconds=1))
        earlier = await queue.enqueue(
            "kb_document_build", {"n": 1}, run_at=now - timedelta(seconds=5)
        )

        jobs = await queue.claim_due(limit=5)

        assert [job.job_id for job in jobs] == [earlier, later]
        assert jobs[0].payload == {"n": 1}
        assert jobs[0].status == JobStatus.RUNNING
        assert jobs[0].attempts == 1
        assert jobs[0].group == "kbindex"

    async def test_future_jobs_are_not_claimed(self, queue: SQLiteJobQueue) -> None:
        await queue.enqueue("kb_embed_chunks", {}, run_at=_now() + timedelta(minutes=5))

        assert await queue.claim_due() == []
        later = await queue.claim_due(now=_now() + timedelta(minutes=10))
        assert len(later) == 1

    async def test_claimed_job_is_not_claimed_twice(self, queue: SQLiteJobQueue) -> None:
        await queue.enqueue("kb_cleanup", {})

        assert len(await queue.claim_due()) == 1
        assert await queue.claim_due() == []

    async def test_limit(self, queue: SQLiteJobQueue) -> None:
        for _ in range(3):
            await queue.enqueue("kb_chunk_build", {})
        assert len(await queue.claim_due(limit=2)) == 2


class TestLifecycle:
    async def test_complete_and_fail(self, queue: SQLiteJobQueue, db_path: Path) -> None:
        ok = await queue.enqueue("kb_chunk_build", {})
        bad = await queue.enqueue("kb_chunk_build", {})
        await queue.claim_due(limit=2)

        await queue.complete(ok)
        await queue.fail(bad, "boom")

        assert await _status(db_path, ok) == "done"
        assert await _status(db_path, bad) == "failed"
        assert await queue.pending_count() == 0

    async def test_cancel_all_only_touches_pending_jobs_of_that_name(
        self, queue: SQLiteJobQueue, db_path: Path
    ) -> None:
        keep = await queue.enqueue("kb_cleanup", {})
        first = await queue.enqueue("kb_chunk_build", {})
        second = await queue.enqueue("kb_chunk_build", {}, run_at=_now() + timedelta(hours=1))

        assert await queue.cancel_all("kb_chunk_build") == 2
        assert await _status(db_path, first) == "cancelled"
        assert await _status(db_path, second) == "cancelled"
        assert await _status(db_path, keep) == "pending"

    async def test_pending_count_includes_running(self, queue: SQLiteJobQueue) -> None:
        await queue.enqueue("kb_chunk_build", {})
        await queue.enqueue("kb_chunk_build", {})
        await queue.enqueue("other", {}, group="elsewhere")
        await queue.claim_due(limit=1)

        assert await queue.pending_count() == 2
        assert await queue.pending_count(group="elsewhere") == 1

    async def test_requeue_stale(self, queue: SQLiteJobQueue, db_path: Path) -> None:
        job_id = await queue.enqueue(
            "kb_embed_chunks", {"cursor": "7"}, run_at=_now() - timedelta(hours=3)
        )
        await queue.claim_due(now=_now() - timedelta(hours=2))

        assert await queue.requeue_stale(timedelta(hours=1)) == 1
        assert await _status(db_path, job_id) == "pending"

        reclaimed = await queue.claim_due()
        assert reclaimed[0].attempts == 2
        assert reclaimed[0].payload == {"cursor": "7"}

    async def test_recently_claimed_jobs_are_not_requeued(self, queue: SQLiteJobQueue) -> None:
        await queue.enqueue("kb_embed_chunks", {})
        await queue.claim_due()

        assert await queue.requeue_stale(timedelta(hours=1)) == 0
