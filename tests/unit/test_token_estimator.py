"""Unit tests for the word-based token estimator and its splitter."""

from __future__ import annotations

import pytest

from kbindex.services.ingestion.token_estimator import TokenEstimator


@pytest.fixture()
def estimator() -> TokenEstimator:
    return TokenEstimator()


class TestEstimate:
    @pytest.mark.parametrize("text", ["", "   ", "\n\t \n"])
    def test_blank_text_is_zero(self, estimator: TokenEstimator, text: str) -> None:
        assert estimator.estimate(text) == 0

    def test_plain_words(self, estimator: TokenEstimator) -> None:
        # ceil(2 * 1.3) = 3
        assert estimator.estimate("hello world") == 3

    def test_punctuation_adds_half_token_each(self, estimator: TokenEstimator) -> None:
        # 3 for the words + ceil(2 * 0.5)
        assert estimator.estimate("Hello, world!") == 4

    def test_long_words_add_extra_tokens(self, estimator: TokenEstimator) -> None:
        # ceil(1.3) = 2, plus (20 - 8) // 4 = 3
        assert estimator.estimate("internationalization") == 5

    def test_newlines_count(self, estimator: TokenEstimator) -> None:
        # 3 for the words + ceil(1 * 0.3)
        assert estimator.estimate("alpha\nbeta") == 4

    def test_punctuation_only_text_is_at_least_one(self, estimator: TokenEstimator) -> None:
        assert estimator.estimate(".") == 1
        assert estimator.estimate("!!!") == 2

    def test_underscore_is_punctuation(self, estimator: TokenEstimator) -> None:
        # words "snake", "case" -> 3, one underscore -> 1
        assert estimator.estimate("snake_case") == 4

    def test_exceeds_limit(self, estimator: TokenEstimator) -> None:
        assert estimator.exceeds_limit("hello world", 2) is True
        assert estimator.exceeds_limit("hello world", 3) is False

    def test_chars_for_tokens(self) -> None:
        assert TokenEstimator.estimate_chars_for_tokens(13) == 60
        assert TokenEstimator.estimate_chars_for_tokens(450) == 2082
        assert TokenEstimator.estimate_chars_for_tokens(0) == 0


class TestSplitToTokenLimit:
    def test_short_text_is_returned_whole(self, estimator: TokenEstimator) -> None:
        assert estimator.split_to_token_limit("  a short text  ", 50) == ["a short text"]

    def test_blank_text_yields_nothing(self, estimator: TokenEstimator) -> None:
        assert estimator.split_to_token_limit(" \n ", 10) == []

    def test_invalid_limit_raises(self, estimator: TokenEstimator) -> None:
        with pytest.raises(ValueError, match="max_tokens"):
            estimator.split_to_token_limit("text", 0)

    def test_splits_on_paragraphs_first(self, estimator: TokenEstimator) -> None:
        paragraphs = ["one two three four five"] * 4
        pieces = estimator.split_to_token_limit("\n\n".join(paragraphs), 15)

        assert len(pieces) >= 2
        assert all(estimator.estimate(piece) <= 15 for piece in pieces)
        assert all(piece.startswith("one") for piece in pieces)

    def test_splits_on_sentences(self, estimator: TokenEstimator) -> None:
        text = "First sentence is here. Second sentence is here. Third sentence is here."
        pieces = estimator.split_to_token_limit(text, 8)

        assert pieces == [
            "First sentence is here.",
            "Second sentence is here.",
            "Third sentence is here.",
        ]

    def test_falls_back_to_words(self, estimator: TokenEstimator) -> None:
        text = " ".join(["word"] * 40)
        pieces = estimator.split_to_token_limit(text, 10)

        assert all(estimator.estimate(piece) <= 10 for piece in pieces)
        assert " ".join(pieces).split() == text.split()

    def test_hard_splits_a_single_long_run(self, estimator: TokenEstimator) -> None:
        run = "x" * 500
        pieces = estimator.split_to_token_limit(run, 5)

        assert "".join(pieces) == run
        assert all(estimator.estimate(piece) <= 5 for piece in pieces)
        assert len(pieces) == 22
