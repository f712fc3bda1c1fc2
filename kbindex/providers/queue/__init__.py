"""Durable job queue backends."""

from kbindex.providers.queue.sqlite_job_queue import SQLiteJobQueue

__all__ = ["SQLiteJobQueue"]
