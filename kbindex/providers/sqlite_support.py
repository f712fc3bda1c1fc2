"""Shared aiosqlite connection helper for the SQLite-backed providers.

Every provider opens a short-lived connection per operation.  Driver errors are
re-raised as :class:`~kbindex.utils.errors.StorageError` so callers see
one failure type regardless of backend.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from kbindex.utils.errors import StorageError

_BUSY_TIMEOUT_SECONDS = 30.0


@asynccontextmanager
async def connect(db_path: Path, provider_name: str) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection with ``Row`` factory; map driver errors to StorageError."""
    try:
        async with aiosqlite.connect(str(db_path), timeout=_BUSY_TIMEOUT_SECONDS) as db:
            db.row_factory = aiosqlite.Row
            yield db
    except aiosqlite.Error as exc:
        raise StorageError(message=f"SQLite error: {exc}", provider_name=provider_name) from exc


async def prepare_database(db_path: Path, statements: list[str], provider_name: str) -> None:
    """Create the parent directory, enable WAL and run DDL *statements*."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with connect(db_path, provider_name) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        for statement in statements:
            await db.execute(statement)
        await db.commit()


def placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))
