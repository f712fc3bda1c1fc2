"""SQLite metadata repositories for documents and chunks."""

from kbindex.providers.metadata.sqlite_chunk_repository import SQLiteChunkRepository
from kbindex.providers.metadata.sqlite_document_repository import SQLiteDocumentRepository

__all__ = ["SQLiteChunkRepository", "SQLiteDocumentRepository"]
