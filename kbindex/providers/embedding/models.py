"""Known embedding models and their vector dimensions."""

from __future__ import annotations

import re

DEFAULT_MODEL = "openai/text-embedding-3-small"

MODEL_DIMENSIONS: dict[str, int] = {
    "openai/text-embedding-3-small": 1536,
    "openai/text-embedding-3-large": 3072,
    "openai/text-embedding-ada-002": 1536,
    "cohere/embed-english-v3.0": 1024,
    "cohere/embed-multilingual-v3.0": 1024,
    "cohere/embed-english-light-v3.0": 384,
    "voyage/voyage-2": 1024,
    "voyage/voyage-large-2": 1536,
    "voyage/voyage-code-2": 1536,
}

_EMBEDDING_MODEL_RE = re.compile(r"embed|embedding|voyage", re.IGNORECASE)


def supports_embeddings(model: str) -> bool:
    """Return True if *model* looks like an embedding model."""
    return bool(_EMBEDDING_MODEL_RE.search(model or ""))


def get_model_dimensions(model: str) -> int | None:
    """Return the known dimensionality of *model*, with or without a vendor prefix."""
    if model in MODEL_DIMENSIONS:
        return MODEL_DIMENSIONS[model]
    for name, dims in MODEL_DIMENSIONS.items():
        if name.split("/", 1)[1] == model:
            return dims
    return None
