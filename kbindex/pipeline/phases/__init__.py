"""Pipeline phases in execution order."""

from kbindex.models.pipeline import PipelinePhase
from kbindex.pipeline.phases.base import BasePhase, PhaseContext
from kbindex.pipeline.phases.chunk_build import ChunkBuildPhase
from kbindex.pipeline.phases.cleanup import CleanupPhase
from kbindex.pipeline.phases.document_build import DocumentBuildPhase
from kbindex.pipeline.phases.embed_chunks import EmbedChunksPhase
from kbindex.pipeline.phases.index_upsert import IndexUpsertPhase


def build_phases(context: PhaseContext) -> dict[PipelinePhase, BasePhase]:
    """Instantiate one handler per phase, keyed by phase."""
    handlers: list[BasePhase] = [
        DocumentBuildPhase(context),
        ChunkBuildPhase(context),
        EmbedChunksPhase(context),
        IndexUpsertPhase(context),
        CleanupPhase(context),
    ]
    return {handler.phase: handler for handler in handlers}


__all__ = [
    "BasePhase",
    "ChunkBuildPhase",
    "CleanupPhase",
    "DocumentBuildPhase",
    "EmbedChunksPhase",
    "IndexUpsertPhase",
    "PhaseContext",
    "build_phases",
]
