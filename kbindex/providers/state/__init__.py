"""Versioned state store backends."""

from kbindex.providers.state.sqlite_state_store import SQLiteStateStore

__all__ = ["SQLiteStateStore"]
