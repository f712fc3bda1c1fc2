"""Ingestion helpers: token estimation, anchor derivation, chunking."""

from kbindex.services.ingestion.anchor_generator import AnchorGenerator
from kbindex.services.ingestion.chunker import Chunker
from kbindex.services.ingestion.token_estimator import TokenEstimator

__all__ = ["AnchorGenerator", "Chunker", "TokenEstimator"]
