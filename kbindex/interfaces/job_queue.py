"""Abstract base class for the durable job queue.

Delivery is at-least-once: a claimed job may run again after a crash, so
every handler must be idempotent.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from kbindex.models.pipeline import QueuedJob


class IJobQueue(ABC):
    """Contract for scheduling and claiming background jobs."""

    async def initialize(self) -> None:
        """Create backing storage.  Default: nothing to do."""

    @abstractmethod
    async def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        run_at: datetime | None = None,
        group: str = "kbindex",
    ) -> int:
        """Schedule a job and return its id.  ``run_at`` defaults to now."""

    @abstractmethod
    async def cancel_all(self, job_name: str, group: str = "kbindex") -> int:
        """Cancel every pending job named *job_name* in *group*."""

    @abstractmethod
    async def claim_due(self, limit: int = 1, now: datetime | None = None) -> list[QueuedJob]:
        """Atomically claim up to *limit* due jobs for execution."""

    @abstractmethod
    async def complete(self, job_id: int) -> None:
        ...

    @abstractmethod
    async def fail(self, job_id: int, error: str) -> None:
        ...

    @abstractmethod
    async def pending_count(self, group: str = "kbindex") -> int:
        ...

    @abstractmethod
    async def requeue_stale(self, older_than: timedelta) -> int:
        """Return jobs claimed longer than *older_than* ago to pending."""
