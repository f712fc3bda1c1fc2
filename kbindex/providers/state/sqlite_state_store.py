"""SQLite-backed versioned key/value store.

Holds the persisted pipeline state as a JSON blob.  Every write bumps
``version``; :meth:`compare_and_set` only writes when the caller saw the
latest version, which is how concurrent batch jobs avoid lost updates.
"""

from __future__ import annotations

from pathlib import Path

import structlog

from kbindex.interfaces.state_store import IStateStore, VersionedValue
from kbindex.providers.sqlite_support import connect, prepare_database
from kbindex.utils.logging import get_logger

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS {table} (
    key        TEXT    PRIMARY KEY,
    value      TEXT    NOT NULL,
    version    INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_UPSERT_SQL = """\
INSERT INTO {table} (key, value, version)
VALUES (?, ?, 1)
ON CONFLICT(key)
DO UPDATE SET value      = excluded.value,
              version    = {table}.version + 1,
              updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now');
"""

_SELECT_SQL = "SELECT value, version FROM {table} WHERE key = ?;"

_CAS_UPDATE_SQL = """\
UPDATE {table}
SET value = ?, version = version + 1, updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
WHERE key = ? AND version = ?;
"""

_CAS_INSERT_SQL = "INSERT OR IGNORE INTO {table} (key, value, version) VALUES (?, ?, 1);"

_DELETE_SQL = "DELETE FROM {table} WHERE key = ?;"


class SQLiteStateStore(IStateStore):
    """Versioned key/value rows in one table.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.
    table_name:
        Table to use, so several stores can share one database.
    """

    def __init__(self, db_path: str | Path, table_name: str = "kb_state") -> None:
        self._db_path = Path(db_path)
        self._table = table_name
        self._logger: structlog.BoundLogger = get_logger(__name__)

    async def initialize(self) -> None:
        await prepare_database(
            self._db_path,
            [_CREATE_TABLE_SQL.format(table=self._table)],
            self.get_provider_name(),
        )
        self._logger.info("state_store_initialized", path=str(self._db_path), table=self._table)

    async def get(self, key: str) -> VersionedValue | None:
        async with connect(self._db_path, self.get_provider_name()) as db:
            cursor = await db.execute(_SELECT_SQL.format(table=self._table), (key,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return VersionedValue(value=row["value"], version=row["version"])

    async def set(self, key: str, value: str) -> int:
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute(_UPSERT_SQL.format(table=self._table), (key, value))
            await db.commit()
            cursor = await db.execute(_SELECT_SQL.format(table=self._table), (key,))
            row = await cursor.fetchone()
        return row["version"]

    async def compare_and_set(self, key: str, expected_version: int | None, value: str) -> bool:
        async with connect(self._db_path, self.get_provider_name()) as db:
            if expected_version is None:
                cursor = await db.execute(
                    _CAS_INSERT_SQL.format(table=self._table), (key, value)
                )
            else:
                cursor = await db.execute(
                    _CAS_UPDATE_SQL.format(table=self._table), (value, key, expected_version)
                )
            await db.commit()
            written = cursor.rowcount == 1
        if not written:
            self._logger.debug("state_cas_conflict", key=key, expected_version=expected_version)
        return written

    async def delete(self, key: str) -> None:
        async with connect(self._db_path, self.get_provider_name()) as db:
            await db.execute(_DELETE_SQL.format(table=self._table), (key,))
            await db.commit()

    def get_provider_name(self) -> str:
        return "sqlite_state_store"
