"""Content source implementations."""

from kbindex.providers.content.json_directory_source import JsonDirectoryContentSource
from kbindex.providers.content.memory_source import InMemoryContentSource

__all__ = ["InMemoryContentSource", "JsonDirectoryContentSource"]
