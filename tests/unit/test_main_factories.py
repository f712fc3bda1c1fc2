"""Unit tests for the wiring in kbindex/main.py, config loading and error types.

Provider selection, the YAML/env config merge and full component
assembly, all without network access.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from kbindex.config.loader import apply_yaml_defaults, load_config
from kbindex.config.settings import Settings
from kbindex.utils.errors import ConfigurationError, RateLimitError


# ======================================================================
# build_embedding_provider
# ======================================================================


class TestBuildEmbeddingProvider:
    def test_openrouter_default(self, settings: Settings) -> None:
        from kbindex.main import build_embedding_provider
        from kbindex.providers.embedding.openrouter_embedding_provider import (
            OpenRouterEmbeddingProvider,
        )

        provider = build_embedding_provider(settings)
        assert isinstance(provider, OpenRouterEmbeddingProvider)
        assert provider.get_model() == "openai/text-embedding-3-small"

    def test_openai_sdk(self, settings: Settings) -> None:
        from kbindex.main import build_embedding_provider
        from kbindex.providers.embedding.openai_embedding_provider import (
            OpenAIEmbeddingProvider,
        )

        s = settings.model_copy(update={"embedding_provider": " OpenAI "})
        assert isinstance(build_embedding_provider(s), OpenAIEmbeddingProvider)

    def test_unknown_provider(self, settings: Settings) -> None:
        from kbindex.main import build_embedding_provider

        s = settings.model_copy(update={"embedding_provider": "carrier-pigeon"})
        with pytest.raises(ConfigurationError, match="Unknown embedding provider"):
            build_embedding_provider(s)

    def test_missing_api_key(self, settings: Settings) -> None:
        from kbindex.main import build_embedding_provider

        s = settings.model_copy(update={"embedding_api_key": ""})
        with pytest.raises(ConfigurationError):
            build_embedding_provider(s)

    def test_unrecognized_model_only_warns(self, settings: Settings) -> None:
        from kbindex.main import build_embedding_provider

        s = settings.model_copy(update={"embedding_model": "acme/embed-xl"})
        with patch("kbindex.main._logger") as mock_logger:
            provider = build_embedding_provider(s)

        assert provider.get_model() == "acme/embed-xl"
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.args[0] == "embedding_model_unrecognized"
        assert mock_logger.warning.call_args.kwargs["looks_like_embedding_model"] is True

    def test_known_model_does_not_warn(self, settings: Settings) -> None:
        from kbindex.main import build_embedding_provider

        with patch("kbindex.main._logger") as mock_logger:
            build_embedding_provider(settings)

        mock_logger.warning.assert_not_called()


# ======================================================================
# build_components
# ======================================================================


class TestBuildComponents:
    async def test_default_sources_come_from_settings(self, settings: Settings) -> None:
        from kbindex.main import build_components, close_components
        from kbindex.providers.content import JsonDirectoryContentSource
        from kbindex.providers.vector_store import SQLiteVectorIndex

        components = await build_components(settings)
        try:
            assert isinstance(components["content_source"], JsonDirectoryContentSource)
            assert isinstance(components["vector_index"], SQLiteVectorIndex)
            assert Path(settings.kb_db_path).exists()
            assert components["config"]["storage"]["db_path"] == settings.kb_db_path
        finally:
            await close_components(components)

    async def test_overrides_are_used(self, components: dict) -> None:
        assert components["embedding_provider"].get_provider_name() == "fake"
        assert components["content_source"].get_provider_name() == "memory_content"
        assert components["retrieval"] is not None

    async def test_missing_key_fails_fast(self, settings: Settings) -> None:
        from kbindex.main import build_components

        s = settings.model_copy(update={"embedding_api_key": ""})
        with pytest.raises(ConfigurationError):
            await build_components(s)


# ======================================================================
# load_config
# ======================================================================


class TestLoadConfig:
    def test_env_values_override_yaml(self, tmp_path: Path, settings: Settings) -> None:
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "embedding:\n"
            "  model: yaml-model\n"
            "  extra: kept\n"
            "chunking:\n"
            "  target_tokens: 300\n"
        )

        config = load_config(str(config_file), settings=settings)

        assert config["embedding"]["model"] == "openai/text-embedding-3-small"
        assert config["embedding"]["extra"] == "kept"
        assert config["embedding"]["configured"] is True
        assert config["chunking"]["target_tokens"] == 300
        assert config["storage"]["db_path"] == settings.kb_db_path

    def test_missing_file_yields_env_sections(self, tmp_path: Path, settings: Settings) -> None:
        config = load_config(str(tmp_path / "absent.yaml"), settings=settings)

        assert set(config) == {"app", "embedding", "storage", "logging"}
        assert config["logging"]["level"] == "INFO"

    def test_empty_file(self, tmp_path: Path, settings: Settings) -> None:
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")

        assert load_config(str(config_file), settings=settings)["app"]["env"] == "development"

    def test_yaml_fills_unset_settings(self, tmp_path: Path, settings: Settings) -> None:
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "chunking:\n"
            "  target_tokens: 300\n"
            "search:\n"
            "  max_top_k: 25\n"
            "pipeline:\n"
            "  batch_size: 40\n"
            "  pending_timeout_hours: 6\n"
        )

        resolved = apply_yaml_defaults(settings, load_config(str(config_file), settings=settings))

        assert resolved.chunk_target_tokens == 300
        assert resolved.search_max_top_k == 25
        assert resolved.pending_timeout_hours == 6
        # Explicitly set fields win over the YAML.
        assert resolved.pipeline_batch_size == 5
        assert resolved.kb_db_path == settings.kb_db_path

    def test_yaml_values_are_validated(self, settings: Settings) -> None:
        with pytest.raises(ValidationError):
            apply_yaml_defaults(settings, {"search": {"max_top_k": "plenty"}})

    async def test_build_components_uses_yaml_sections(
        self, tmp_path: Path, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        from kbindex.main import build_components, close_components

        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "config.yaml").write_text("chunking:\n  target_tokens: 320\n")
        monkeypatch.chdir(tmp_path)

        components = await build_components(settings)
        try:
            assert components["settings"].chunk_target_tokens == 320
            assert components["config"]["chunking"]["target_tokens"] == 320
        finally:
            await close_components(components)


# ======================================================================
# Errors
# ======================================================================


class TestRateLimitError:
    def test_from_headers(self) -> None:
        error = RateLimitError.from_headers({"Retry-After": "17"}, provider_name="openrouter")

        assert error.retry_after == 17
        assert error.limit_type == "requests"
        assert str(error).startswith("[openrouter] Rate limit exceeded")

    def test_token_limit_detected(self) -> None:
        error = RateLimitError.from_headers(
            {"retry-after": "2.5", "x-ratelimit-limit-tokens": "1000000"}
        )
        assert error.retry_after == 2
        assert error.limit_type == "tokens"

    @pytest.mark.parametrize("headers", [{}, {"retry-after": "soon"}])
    def test_default_retry_after(self, headers: dict[str, str]) -> None:
        assert RateLimitError.from_headers(headers).retry_after == 60

    def test_negative_is_clamped(self) -> None:
        assert RateLimitError.from_headers({"retry-after": "-4"}).retry_after == 0
