"""SQLite-backed durable job queue.

Jobs are rows in ``kb_jobs``.  ``claim_due`` moves due rows from
``pending`` to ``running`` inside an immediate transaction, so two
workers sharing the database never claim the same row.  A worker that
dies after claiming leaves the row ``running``; ``requeue_stale`` puts
such rows back, which is what makes delivery at-least-once.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import structlog

from kbindex.interfaces.job_queue import IJobQueue
from kbindex.models.pipeline import JobStatus, QueuedJob
from kbindex.providers.sqlite_support import connect, placeholders, prepare_database

logger = structlog.get_logger(logger_name=__name__)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS kb_jobs (
    job_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name   TEXT    NOT NULL,
    job_group  TEXT    NOT NULL DEFAULT 'kbindex',
    payload    TEXT    NOT NULL DEFAULT '{}',
    run_at     TEXT    NOT NULL,
    status     TEXT    NOT NULL DEFAULT 'pending',
    attempts   INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    claimed_at TEXT,
    created_at TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_kb_jobs_due ON kb_jobs(status, run_at);",
    "CREATE INDEX IF NOT EXISTS idx_kb_jobs_name ON kb_jobs(job_group, job_name, status);",
]


def _to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)  # noqa: UP017
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")  # noqa: UP017


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


class SQLiteJobQueue(IJobQueue):
    """Durable queue with atomic claiming.

    Parameters
    ----------
    db_path:
        SQLite database file; may be shared with the metadata tables.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        await prepare_database(
            self._db_path,
            [_CREATE_TABLE_SQL, *_CREATE_INDICES_SQL],
            self.get_provider_name(),
        )
        logger.info("job_queue_initialized", path=str(self._db_path))

    async def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        run_at: datetime | None = None,
        group: str = "kbindex",
    ) -> int:
        due = run_at or _utcnow()
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "INSERT INTO kb_jobs (job_name, job_group, payload, run_at) VALUES (?, ?, ?, ?)",
                (job_name, group, json.dumps(payload, default=str), _to_iso(due)),
            )
            await db.commit()
            job_id = cursor.lastrowid
        logger.debug("job_enqueued", job_id=job_id, job_name=job_name, run_at=_to_iso(due))
        return job_id

    async def cancel_all(self, job_name: str, group: str = "kbindex") -> int:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "UPDATE kb_jobs SET status = ?, "
                "updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now') "
                "WHERE job_name = ? AND job_group = ? AND status = ?",
                (JobStatus.CANCELLED.value, job_name, group, JobStatus.PENDING.value),
            )
            await db.commit()
            cancelled = cursor.rowcount
        if cancelled:
            logger.info("jobs_cancelled", job_name=job_name, group=group, count=cancelled)
        return cancelled

    async def claim_due(self, limit: int = 1, now: datetime | None = None) -> list[QueuedJob]:
        """Claim up to *limit* pending jobs whose ``run_at`` has passed.

        Oldest ``run_at`` first, ties by id.
        """
        moment = _to_iso(now or _utcnow())
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "SELECT job_id, job_name, job_group, payload, run_at, attempts FROM kb_jobs "
                "WHERE status = ? AND run_at <= ? ORDER BY run_at, job_id LIMIT ?",
                (JobStatus.PENDING.value, moment, limit),
            )
            rows = await cursor.fetchall()
            if not rows:
                await db.commit()
                return []
            ids = [row["job_id"] for row in rows]
            await db.execute(
                f"UPDATE kb_jobs SET status = ?, attempts = attempts + 1, claimed_at = ?, "
                f"updated_at = ? WHERE job_id IN ({placeholders(len(ids))})",
                [JobStatus.RUNNING.value, moment, moment, *ids],
            )
            await db.commit()

        return [
            QueuedJob(
                job_id=row["job_id"],
                job_name=row["job_name"],
                payload=json.loads(row["payload"] or "{}"),
                group=row["job_group"],
                run_at=row["run_at"],
                attempts=row["attempts"] + 1,
                status=JobStatus.RUNNING,
            )
            for row in rows
        ]

    async def complete(self, job_id: int) -> None:
        await self._finish(job_id, JobStatus.DONE, None)

    async def fail(self, job_id: int, error: str) -> None:
        await self._finish(job_id, JobStatus.FAILED, error[:1000])

    async def _finish(self, job_id: int, status: JobStatus, error: str | None) -> None:
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute(
                "UPDATE kb_jobs SET status = ?, last_error = ?, "
                "updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now') WHERE job_id = ?",
                (status.value, error, job_id),
            )
            await db.commit()

    async def pending_count(self, group: str = "kbindex") -> int:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM kb_jobs WHERE job_group = ? AND status IN (?, ?)",
                (group, JobStatus.PENDING.value, JobStatus.RUNNING.value),
            )
            return (await cursor.fetchone())[0]

    async def requeue_stale(self, older_than: timedelta) -> int:
        """Return ``running`` jobs claimed before ``now - older_than`` to ``pending``."""
        cutoff = _to_iso(_utcnow() - older_than)
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(
                "UPDATE kb_jobs SET status = ?, claimed_at = NULL "
                "WHERE status = ? AND claimed_at < ?",
                (JobStatus.PENDING.value, JobStatus.RUNNING.value, cutoff),
            )
            await db.commit()
            requeued = cursor.rowcount
        if requeued:
            logger.warning("stale_jobs_requeued", count=requeued)
        return requeued

    def get_provider_name(self) -> str:
        return "sqlite_job_queue"
