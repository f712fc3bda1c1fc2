"""Public interface definitions for every external collaborator.

The pipeline and retrieval service depend only on these abstract base
classes; concrete adapters live in ``kbindex/providers`` and are wired
together in ``kbindex/main.py``.

CONCRETE PROVIDER MAP:
    Interface            →  Concrete implementations (in kbindex/providers/)
    ─────────────────────────────────────────────────────────────────────
    IEmbeddingProvider   →  OpenRouterEmbeddingProvider, OpenAIEmbeddingProvider
    IVectorIndex         →  SQLiteVectorIndex, InMemoryVectorIndex
    IContentSource       →  JsonDirectoryContentSource, InMemoryContentSource
    IJobQueue            →  SQLiteJobQueue
    IStateStore          →  SQLiteStateStore
"""

from kbindex.interfaces.content_source import IContentSource
from kbindex.interfaces.embedding_provider import IEmbeddingProvider
from kbindex.interfaces.job_queue import IJobQueue
from kbindex.interfaces.state_store import IStateStore, VersionedValue
from kbindex.interfaces.vector_index import IVectorIndex

__all__ = [
    "IContentSource",
    "IEmbeddingProvider",
    "IJobQueue",
    "IStateStore",
    "IVectorIndex",
    "VersionedValue",
]
