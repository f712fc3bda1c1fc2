"""kbindex: content ingestion pipeline, vector index and retrieval service."""

__version__ = "0.1.0"
