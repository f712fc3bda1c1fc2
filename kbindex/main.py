"""kbindex application wiring.

Builds every collaborator of the indexing pipeline and the retrieval
service from :class:`~kbindex.config.settings.Settings` and
``config/config.yaml``.  The CLI and any embedding host (a web app, a
scheduler) go through :func:`build_components` so provider selection
lives in one place.

All SQLite-backed collaborators (documents, chunks, vectors, job queue,
pipeline state) share the database file named by ``KB_DB_PATH``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog

from kbindex.config.loader import apply_yaml_defaults, load_config
from kbindex.config.settings import Settings
from kbindex.interfaces.content_source import IContentSource
from kbindex.interfaces.embedding_provider import IEmbeddingProvider
from kbindex.interfaces.vector_index import IVectorIndex
from kbindex.pipeline import KnowledgeBasePipeline, PhaseContext, PipelineWorker, ProgressTracker
from kbindex.providers.embedding.models import get_model_dimensions, supports_embeddings
from kbindex.providers.metadata import SQLiteChunkRepository, SQLiteDocumentRepository
from kbindex.providers.queue import SQLiteJobQueue
from kbindex.providers.state import SQLiteStateStore
from kbindex.services.ingestion.chunker import Chunker
from kbindex.services.retrieval_service import RetrievalService
from kbindex.utils.errors import ConfigurationError
from kbindex.utils.logging import configure_logging, get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

_EMBEDDING_PROVIDERS = ("openrouter", "openai")


def setup_logging(app_settings: Settings) -> None:
    """Configure structlog from settings (JSON output in production)."""
    configure_logging(
        log_level=app_settings.log_level,
        json_output=(app_settings.app_env == "production"),
    )


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


def build_embedding_provider(app_settings: Settings) -> IEmbeddingProvider:
    """Build the embedding provider named by ``EMBEDDING_PROVIDER``.

    ``openrouter`` talks to any OpenAI-compatible ``/embeddings`` endpoint
    over httpx; ``openai`` goes through the official SDK.

    Raises
    ------
    ConfigurationError
        Unknown provider name, or no API key / model configured.
    """
    name = app_settings.embedding_provider.strip().lower()
    if name not in _EMBEDDING_PROVIDERS:
        raise ConfigurationError(
            message=f"Unknown embedding provider '{app_settings.embedding_provider}' "
            f"(expected one of: {', '.join(_EMBEDDING_PROVIDERS)})"
        )
    if not app_settings.embedding_configured():
        raise ConfigurationError(
            message="Embedding provider is not configured: set EMBEDDING_API_KEY",
            provider_name=name,
        )
    # Unknown models still work; their dimension is learned from the first response.
    if get_model_dimensions(app_settings.embedding_model) is None:
        _logger.warning(
            "embedding_model_unrecognized",
            provider=name,
            model=app_settings.embedding_model,
            looks_like_embedding_model=supports_embeddings(app_settings.embedding_model),
        )

    if name == "openai":
        from kbindex.providers.embedding.openai_embedding_provider import (
            OpenAIEmbeddingProvider,
        )

        return OpenAIEmbeddingProvider(settings=app_settings)

    from kbindex.providers.embedding.openrouter_embedding_provider import (
        OpenRouterEmbeddingProvider,
    )

    return OpenRouterEmbeddingProvider(settings=app_settings)


def build_vector_index(app_settings: Settings) -> IVectorIndex:
    from kbindex.providers.vector_store import SQLiteVectorIndex

    return SQLiteVectorIndex(
        app_settings.kb_db_path, max_scan=app_settings.search_max_scan_vectors
    )


def build_content_source(app_settings: Settings) -> IContentSource:
    from kbindex.providers.content import JsonDirectoryContentSource

    return JsonDirectoryContentSource(app_settings.content_dir)


def build_chunker(app_settings: Settings) -> Chunker:
    return Chunker(
        target_tokens=app_settings.chunk_target_tokens,
        overlap_tokens=app_settings.chunk_overlap_tokens,
        min_tokens=app_settings.chunk_min_tokens,
        max_tokens=app_settings.chunk_max_tokens,
    )


# ---------------------------------------------------------------------------
# Full assembly
# ---------------------------------------------------------------------------


async def build_components(
    custom_settings: Settings | None = None,
    *,
    embedding_provider: IEmbeddingProvider | None = None,
    content_source: IContentSource | None = None,
    vector_index: IVectorIndex | None = None,
) -> dict[str, Any]:
    """Construct, initialize and return every service keyed by role name.

    Parameters
    ----------
    custom_settings:
        Settings to use; read from the environment when omitted.  Unset
        chunking, search and pipeline fields take their values from
        ``config/config.yaml``.
    embedding_provider, content_source, vector_index:
        Overrides for the corresponding factories (tests, embedding hosts).

    Returns
    -------
    dict
        Keys: ``settings``, ``config``, ``documents``, ``chunks``,
        ``vector_index``, ``job_queue``, ``state_store``,
        ``content_source``, ``embedding_provider``, ``chunker``,
        ``progress_tracker``, ``pipeline``, ``retrieval``, ``worker``.
    """
    s = custom_settings or Settings()
    config = load_config(settings=s)
    s = apply_yaml_defaults(s, config)

    db_path = Path(s.kb_db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    documents = SQLiteDocumentRepository(db_path)
    chunks = SQLiteChunkRepository(db_path)
    job_queue = SQLiteJobQueue(db_path)
    state_store = SQLiteStateStore(db_path)
    index = vector_index or build_vector_index(s)

    await documents.initialize()
    await chunks.initialize()
    await index.initialize()
    await job_queue.initialize()
    await state_store.initialize()

    embedder = embedding_provider or build_embedding_provider(s)
    source = content_source or build_content_source(s)
    chunker = build_chunker(s)

    context = PhaseContext(
        settings=s,
        content_source=source,
        documents=documents,
        chunks=chunks,
        vector_index=index,
        embedding_provider=embedder,
        chunker=chunker,
    )
    tracker = ProgressTracker()
    pipeline = KnowledgeBasePipeline(context, state_store, job_queue, tracker)
    retrieval = RetrievalService(
        embedding_provider=embedder,
        vector_index=index,
        chunks=chunks,
        documents=documents,
        max_top_k=s.search_max_top_k,
        max_query_length=s.search_max_query_length,
    )
    worker = PipelineWorker(pipeline, job_queue, poll_interval=s.worker_poll_interval)

    _logger.info(
        "components_built",
        db_path=str(db_path),
        embedding_provider=embedder.get_provider_name(),
        embedding_model=embedder.get_model(),
        vector_index=index.get_provider_name(),
        content_source=source.get_provider_name(),
    )

    return {
        "settings": s,
        "config": config,
        "documents": documents,
        "chunks": chunks,
        "vector_index": index,
        "job_queue": job_queue,
        "state_store": state_store,
        "content_source": source,
        "embedding_provider": embedder,
        "chunker": chunker,
        "progress_tracker": tracker,
        "pipeline": pipeline,
        "retrieval": retrieval,
        "worker": worker,
    }


async def close_components(components: dict[str, Any]) -> None:
    """Release network clients held by the components."""
    await components["embedding_provider"].aclose()
