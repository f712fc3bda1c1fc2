"""Deterministic word-based token estimation.

Exact tokenizer counts differ per embedding model, so chunking and batching
decisions use a cheap heuristic instead:

    tokens = ceil(words * 1.3)
           + floor((len(word) - 8) / 4)   for every word longer than 8 chars
           + ceil(punctuation * 0.5)
           + ceil(newlines * 0.3)

All arithmetic is integer so estimates are identical across platforms.
Empty or whitespace-only text is 0 tokens; anything else is at least 1.
"""

from __future__ import annotations

import re

# Letters and digits in any script; underscore counts as punctuation.
_WORD_RE = re.compile(r"[^\W_]+")
_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+(?=[A-Z])")

_LONG_WORD_THRESHOLD = 8


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


class TokenEstimator:
    """Estimates token counts and splits text to fit a token budget."""

    def estimate(self, text: str) -> int:
        """Return the estimated token count of *text*."""
        if not text or not text.strip():
            return 0

        words = _WORD_RE.findall(text)
        tokens = _ceil_div(len(words) * 13, 10)
        for word in words:
            if len(word) > _LONG_WORD_THRESHOLD:
                tokens += (len(word) - _LONG_WORD_THRESHOLD) // 4

        punctuation = sum(1 for ch in text if not ch.isalnum() and not ch.isspace())
        tokens += _ceil_div(punctuation, 2)
        tokens += _ceil_div(text.count("\n") * 3, 10)
        return max(1, tokens)

    def exceeds_limit(self, text: str, limit: int) -> bool:
        return self.estimate(text) > limit

    @staticmethod
    def estimate_chars_for_tokens(tokens: int) -> int:
        """Approximate character span of *tokens* tokens (``ceil(t / 1.3) * 6``)."""
        if tokens <= 0:
            return 0
        return _ceil_div(tokens * 10, 13) * 6

    # ------------------------------------------------------------------
    # Splitting
    # ------------------------------------------------------------------

    def split_to_token_limit(self, text: str, max_tokens: int) -> list[str]:
        """Split *text* into pieces of at most *max_tokens* estimated tokens.

        Tries paragraph breaks first, then sentence breaks, then words, and
        finally hard-splits a single over-long word by characters.  Pieces
        are accumulated greedily so they land close to the limit.
        """
        if max_tokens < 1:
            msg = f"max_tokens must be >= 1, got {max_tokens}"
            raise ValueError(msg)

        stripped = text.strip()
        if not stripped:
            return []
        if self.estimate(stripped) <= max_tokens:
            return [stripped]

        paragraphs = [p.strip() for p in _PARAGRAPH_RE.split(stripped) if p.strip()]
        if len(paragraphs) > 1:
            return self._accumulate(paragraphs, max_tokens, "\n\n")

        sentences = [s.strip() for s in _SENTENCE_RE.split(stripped) if s.strip()]
        if len(sentences) > 1:
            return self._accumulate(sentences, max_tokens, " ")

        words = stripped.split()
        if len(words) > 1:
            return self._accumulate(words, max_tokens, " ")

        return self._hard_split(stripped, max_tokens)

    def _accumulate(self, pieces: list[str], max_tokens: int, separator: str) -> list[str]:
        """Greedily pack *pieces* into strings that stay within *max_tokens*."""
        result: list[str] = []
        current = ""

        for piece in pieces:
            if self.exceeds_limit(piece, max_tokens):
                if current:
                    result.append(current)
                    current = ""
                result.extend(self.split_to_token_limit(piece, max_tokens))
                continue

            candidate = f"{current}{separator}{piece}" if current else piece
            if current and self.exceeds_limit(candidate, max_tokens):
                result.append(current)
                current = piece
            else:
                current = candidate

        if current:
            result.append(current)
        return result

    def _hard_split(self, word: str, max_tokens: int) -> list[str]:
        """Cut a single unbroken run of characters at the token boundary."""
        pieces: list[str] = []
        size = max(1, self.estimate_chars_for_tokens(max_tokens))
        start = 0
        while start < len(word):
            end = min(len(word), start + size)
            while end - start > 1 and self.exceeds_limit(word[start:end], max_tokens):
                end -= 1
            pieces.append(word[start:end])
            start = end
        return pieces
