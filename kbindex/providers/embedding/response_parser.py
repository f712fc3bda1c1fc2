"""Lenient parsing of embeddings API response bodies.

Some OpenAI-compatible gateways wrap the JSON payload in markdown fences
or prepend diagnostic text.  The body is parsed strictly first, then
unwrapped once; anything still unparseable is a ``ProviderError``.
"""

from __future__ import annotations

import json
import re
from typing import Any

from kbindex.models.kb import EmbeddingResult, EmbeddingUsage
from kbindex.utils.errors import ProviderError, RateLimitError

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)


def unwrap_json(body: str) -> str | None:
    """Strip markdown fences or surrounding text from a JSON object body."""
    match = _FENCE_RE.match(body)
    if match:
        return match.group(1)
    start = body.find("{")
    end = body.rfind("}")
    if start >= 0 and end > start:
        return body[start : end + 1]
    return None


def parse_json_body(body: str, provider_name: str) -> dict[str, Any]:
    """Parse *body* as a JSON object, unwrapping it once if needed."""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        unwrapped = unwrap_json(body)
        if unwrapped is None:
            raise ProviderError(
                message=f"Unparseable embedding response: {body[:120]!r}",
                provider_name=provider_name,
            ) from None
        try:
            payload = json.loads(unwrapped)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                message=f"Unparseable embedding response after unwrapping: {exc}",
                provider_name=provider_name,
            ) from exc

    if not isinstance(payload, dict):
        raise ProviderError(
            message="Embedding response is not a JSON object",
            provider_name=provider_name,
        )
    return payload


def to_embedding_result(
    payload: dict[str, Any],
    model: str,
    provider_name: str,
) -> EmbeddingResult:
    """Convert an OpenAI-style ``{"data": [...], "usage": {...}}`` payload."""
    error = payload.get("error")
    if error:
        code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        if code == 429:
            raise RateLimitError(message=str(message), provider_name=provider_name)
        raise ProviderError(
            message=f"Provider returned error: {message}", provider_name=provider_name
        )

    data = payload.get("data")
    if not isinstance(data, list) or not data:
        raise ProviderError(
            message="Embedding response has no data array",
            provider_name=provider_name,
        )

    try:
        ordered = sorted(data, key=lambda item: int(item.get("index", 0)))
        vectors = [[float(v) for v in item["embedding"]] for item in ordered]
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise ProviderError(
            message=f"Malformed embedding entries: {exc}",
            provider_name=provider_name,
        ) from exc

    dims = len(vectors[0])
    if dims == 0 or any(len(vector) != dims for vector in vectors):
        raise ProviderError(
            message="Embedding vectors have inconsistent dimensions",
            provider_name=provider_name,
            retryable=False,
        )

    usage = payload.get("usage") or {}
    return EmbeddingResult(
        vectors=vectors,
        dims=dims,
        model=str(payload.get("model") or model),
        usage=EmbeddingUsage(
            prompt_tokens=int(usage.get("prompt_tokens", 0) or 0),
            total_tokens=int(usage.get("total_tokens", 0) or 0),
        ),
    )
