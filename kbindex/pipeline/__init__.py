"""Resumable indexing pipeline: phases, orchestrator and queue worker."""

from kbindex.pipeline.batch_size_manager import BatchSizeManager
from kbindex.pipeline.orchestrator import (
    QUEUE_GROUP,
    REMOVE_ITEM_JOB,
    SINGLE_ITEM_JOB,
    STATE_KEY,
    KnowledgeBasePipeline,
)
from kbindex.pipeline.phases import PhaseContext
from kbindex.pipeline.progress_tracker import ProgressTracker
from kbindex.pipeline.worker import PipelineWorker

__all__ = [
    "QUEUE_GROUP",
    "REMOVE_ITEM_JOB",
    "SINGLE_ITEM_JOB",
    "STATE_KEY",
    "BatchSizeManager",
    "KnowledgeBasePipeline",
    "PhaseContext",
    "PipelineWorker",
    "ProgressTracker",
]
