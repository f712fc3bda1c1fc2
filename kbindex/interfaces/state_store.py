"""Abstract base class for the durable key/value state store.

Values are versioned so callers can perform compare-and-set updates and
never lose a concurrent writer's changes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class VersionedValue:
    value: str
    version: int


class IStateStore(ABC):
    """Contract for persisted pipeline state surviving process restarts."""

    async def initialize(self) -> None:
        """Create backing storage.  Default: nothing to do."""

    @abstractmethod
    async def get(self, key: str) -> VersionedValue | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> int:
        """Unconditionally write *value*; returns the new version."""

    @abstractmethod
    async def compare_and_set(self, key: str, expected_version: int | None, value: str) -> bool:
        """Write *value* only if the stored version equals *expected_version*.

        ``expected_version=None`` means "only if the key does not exist".
        Returns True when the write happened.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...
