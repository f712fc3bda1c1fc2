"""Vector index backends implementing :class:`~kbindex.interfaces.vector_index.IVectorIndex`."""

from kbindex.providers.vector_store.memory_vector_index import InMemoryVectorIndex
from kbindex.providers.vector_store.sqlite_vector_index import SQLiteVectorIndex

__all__ = ["InMemoryVectorIndex", "SQLiteVectorIndex"]
