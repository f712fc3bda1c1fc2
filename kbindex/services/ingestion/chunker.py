"""Heading-aware, token-bounded chunking with overlapping windows.

Turns rendered plain text plus its heading list into ordered
:class:`~kbindex.models.kb.ChunkDescriptor` objects.

The strategy:

1. **Sections** -- The text is cut at headings of the two shallowest
   heading levels used in the document.  Text before the first such
   heading is its own section.  Each section records the stack of active
   headings (all levels) at its start offset as its ``heading_path``.

2. **Budget** -- A section within the target token count becomes one
   chunk; a larger section is split by paragraphs, then sentences, then
   words (see :meth:`TokenEstimator.split_to_token_limit`).

3. **Overlap** -- Every chunk after the first starts with the tail
   (~``overlap`` tokens, cut at a word boundary) of the previous chunk, so
   a passage straddling a boundary is retrievable from either side.

Output is fully deterministic: the same text, headings and settings always
produce identical boundaries, hashes and anchors.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from kbindex.models.kb import ChunkDescriptor, Heading
from kbindex.services.ingestion.anchor_generator import AnchorGenerator
from kbindex.services.ingestion.token_estimator import TokenEstimator
from kbindex.utils.errors import ConfigurationError
from kbindex.utils.hashing import sha256_hex

logger = structlog.get_logger(logger_name=__name__)

MIN_CHUNK_TOKENS = 50
_BOUNDARY_LEVELS = 2


@dataclass(frozen=True)
class _ResolvedHeading:
    offset: int
    level: int
    text: str


@dataclass(frozen=True)
class _Section:
    start: int
    text: str
    heading_path: tuple[str, ...]


class Chunker:
    """Splits documents into overlapping, heading-scoped chunks.

    Parameters
    ----------
    target_tokens:
        Preferred chunk size in estimated tokens (default 450).
    overlap_tokens:
        Tokens carried from the previous chunk's tail (default 60).
    min_tokens:
        Sections smaller than this are merged into the following section.
    max_tokens:
        Hard ceiling for a chunk including its overlap prefix.
    """

    def __init__(
        self,
        target_tokens: int = 450,
        overlap_tokens: int = 60,
        min_tokens: int = MIN_CHUNK_TOKENS,
        max_tokens: int = 800,
        estimator: TokenEstimator | None = None,
        anchors: AnchorGenerator | None = None,
    ) -> None:
        if min_tokens < 1:
            raise ConfigurationError(f"min_tokens must be positive, got {min_tokens}")
        if target_tokens < min_tokens:
            raise ConfigurationError(
                f"target_tokens ({target_tokens}) must be >= min_tokens ({min_tokens})"
            )
        if overlap_tokens < 0 or overlap_tokens >= target_tokens:
            raise ConfigurationError(
                f"overlap_tokens ({overlap_tokens}) must be in [0, target_tokens)"
            )
        if max_tokens < target_tokens:
            raise ConfigurationError(
                f"max_tokens ({max_tokens}) must be >= target_tokens ({target_tokens})"
            )
        self._target = target_tokens
        self._overlap = overlap_tokens
        self._min = min_tokens
        self._max = max_tokens
        self._estimator = estimator or TokenEstimator()
        self._anchors = anchors or AnchorGenerator()

    @property
    def target_tokens(self) -> int:
        return self._target

    @property
    def overlap_tokens(self) -> int:
        return self._overlap

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def chunk(
        self,
        text: str,
        headings: list[Heading] | None = None,
        doc_key: str = "",
    ) -> list[ChunkDescriptor]:
        """Split *text* into ordered chunk descriptors.

        Parameters
        ----------
        text:
            Normalized plain text of the document.
        headings:
            Heading list; offsets may be None and are then located in *text*.
        doc_key:
            Stable document identifier mixed into every anchor.

        Returns
        -------
        list[ChunkDescriptor]
            Empty for empty or whitespace-only text.
        """
        if not text or not text.strip():
            return []

        resolved = self._resolve_headings(text, headings or [])
        sections = self._merge_small_sections(self._build_sections(text, resolved))

        descriptors: list[ChunkDescriptor] = []
        previous_body = ""
        for section in sections:
            search_from = 0
            for body in self._split_section(section.text):
                local_start, local_end = _locate(section.text, body, search_from)
                search_from = local_end

                overlap_text = self._build_overlap(previous_body) if descriptors else ""
                chunk_text, overlap_text = self._fit_with_overlap(overlap_text, body)
                chunk_index = len(descriptors)
                heading_path = list(section.heading_path)

                descriptors.append(
                    ChunkDescriptor(
                        chunk_index=chunk_index,
                        anchor=self._anchors.generate(doc_key, heading_path, chunk_index),
                        heading_path=heading_path,
                        text=chunk_text,
                        hash=sha256_hex(chunk_text),
                        start_offset=section.start + local_start,
                        end_offset=section.start + local_end,
                        token_estimate=self._estimator.estimate(chunk_text),
                        overlap_tokens=self._estimator.estimate(overlap_text),
                    )
                )
                previous_body = body

        logger.debug(
            "chunking_complete",
            doc_key=doc_key,
            num_sections=len(sections),
            num_chunks=len(descriptors),
            avg_tokens=_avg_tokens(descriptors),
        )
        return descriptors

    # ------------------------------------------------------------------
    # Headings and sections
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_headings(text: str, headings: list[Heading]) -> list[_ResolvedHeading]:
        """Attach offsets to headings and sort them by position."""
        lowered = text.lower()
        resolved: list[_ResolvedHeading] = []
        search_from = 0

        for heading in headings:
            label = " ".join(heading.text.split())
            if not label:
                continue
            offset = heading.offset
            if offset is None:
                needle = label.lower()
                offset = lowered.find(needle, search_from)
                if offset < 0:
                    offset = lowered.find(needle)
                if offset < 0:
                    logger.debug("heading_not_found", heading=label)
                    continue
                search_from = offset + len(needle)
            if offset >= len(text):
                continue
            resolved.append(_ResolvedHeading(offset=offset, level=heading.level, text=label))

        return sorted(resolved, key=lambda h: h.offset)

    @staticmethod
    def _build_sections(text: str, headings: list[_ResolvedHeading]) -> list[_Section]:
        levels = sorted({h.level for h in headings})[:_BOUNDARY_LEVELS]
        boundaries = sorted({h.offset for h in headings if h.level in levels} - {0})
        starts = [0, *boundaries]
        ends = [*boundaries, len(text)]

        sections: list[_Section] = []
        for start, end in zip(starts, ends):
            raw = text[start:end]
            if not raw.strip():
                continue
            lead = len(raw) - len(raw.lstrip())
            sections.append(
                _Section(
                    start=start + lead,
                    text=raw.strip(),
                    heading_path=_heading_stack(headings, start),
                )
            )
        return sections

    def _merge_small_sections(self, sections: list[_Section]) -> list[_Section]:
        """Fold sections below *min_tokens* into the section that follows."""
        merged: list[_Section] = []
        carry: _Section | None = None

        for section in sections:
            if carry is not None:
                section = _Section(
                    start=carry.start,
                    text=f"{carry.text}\n\n{section.text}",
                    heading_path=carry.heading_path,
                )
                carry = None
            if self._estimator.estimate(section.text) < self._min:
                carry = section
                continue
            merged.append(section)

        if carry is not None:
            merged.append(carry)
        return merged

    # ------------------------------------------------------------------
    # Section splitting and overlap
    # ------------------------------------------------------------------

    def _split_section(self, text: str) -> list[str]:
        if not self._estimator.exceeds_limit(text, self._target):
            return [text]

        pieces = self._estimator.split_to_token_limit(text, self._target)
        # A tiny trailing remainder reads better attached to its predecessor.
        if len(pieces) > 1 and self._estimator.estimate(pieces[-1]) < self._min:
            joined = f"{pieces[-2]}\n\n{pieces[-1]}"
            if not self._estimator.exceeds_limit(joined, self._target):
                pieces = [*pieces[:-2], joined]
        return pieces

    def _build_overlap(self, previous: str) -> str:
        """Return roughly *overlap* tokens from the end of *previous*."""
        if self._overlap <= 0 or not previous:
            return ""

        max_chars = self._estimator.estimate_chars_for_tokens(self._overlap)
        if len(previous) <= max_chars:
            tail = previous
        else:
            start = len(previous) - max_chars
            if not previous[start - 1].isspace():
                # Move forward to the next word boundary.
                boundary = next(
                    (i for i in range(start, len(previous)) if previous[i].isspace()),
                    len(previous),
                )
                start = boundary
            tail = previous[start:]

        words = tail.split()
        while words and self._estimator.exceeds_limit(" ".join(words), self._overlap):
            words = words[1:]
        return " ".join(words)

    def _fit_with_overlap(self, overlap: str, body: str) -> tuple[str, str]:
        """Prefix *overlap*, dropping leading overlap words beyond *max_tokens*."""
        words = overlap.split()
        while words:
            candidate = f"{' '.join(words)}\n\n{body}"
            if not self._estimator.exceeds_limit(candidate, self._max):
                return candidate, " ".join(words)
            words = words[1:]
        return body, ""


def _heading_stack(headings: list[_ResolvedHeading], position: int) -> tuple[str, ...]:
    """Stack of headings active at *position* (deeper levels nest)."""
    stack: list[_ResolvedHeading] = []
    for heading in headings:
        if heading.offset > position:
            break
        while stack and stack[-1].level >= heading.level:
            stack.pop()
        stack.append(heading)
    return tuple(h.text for h in stack)


def _locate(text: str, piece: str, search_from: int) -> tuple[int, int]:
    """Return the (start, end) span of *piece* inside *text*.

    Pieces are rebuilt with normalized separators, so the span is found by
    walking the piece's words forward through the original text.
    """
    words = piece.split()
    if not words:
        return search_from, search_from
    start = text.find(words[0], search_from)
    if start < 0:
        return search_from, min(len(text), search_from + len(piece))

    position = start
    for word in words:
        found = text.find(word, position)
        if found < 0:
            break
        position = found + len(word)
    return start, position


def _avg_tokens(chunks: list[ChunkDescriptor]) -> int:
    if not chunks:
        return 0
    return sum(c.token_estimate for c in chunks) // len(chunks)
