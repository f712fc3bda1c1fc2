"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ────────────────────────────────────────────────
#
# Values are read from two sources (highest priority first):
#
#   1. Environment variables, e.g. EMBEDDING_API_KEY=sk-or-abc123
#   2. The .env file in the working directory
#
# Field `embedding_api_key` maps to env var `EMBEDDING_API_KEY`.
# Defaults apply when neither source sets a value.
# ──────────────────────────────────────────────────────────────────────
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """kbindex settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # === Embedding provider ===
    # Empty key = "not configured"; the factory in main.py refuses to build
    # a network provider without one.
    embedding_provider: str = "openrouter"  # "openrouter" (httpx) or "openai" (SDK)
    embedding_api_key: str = ""
    embedding_base_url: str = "https://openrouter.ai/api/v1"
    embedding_model: str = "openai/text-embedding-3-small"
    embedding_timeout: float = 120.0
    embedding_max_retries: int = 3
    embedding_base_delay: float = 5.0
    embedding_backoff_multiplier: float = 2.0
    embedding_max_delay: float = 120.0

    # === Storage / content ===
    kb_db_path: str = "data/kb.db"
    content_dir: str = "data/content"

    # === Chunking ===
    chunk_target_tokens: int = 450
    chunk_overlap_tokens: int = 60
    chunk_min_tokens: int = 50
    chunk_max_tokens: int = 800

    # === Search ===
    search_default_top_k: int = 8
    search_max_top_k: int = 50
    search_max_query_length: int = 2000
    search_max_scan_vectors: int = 5000

    # === Pipeline ===
    pipeline_batch_size: int = 20
    embed_batch_size: int = Field(default=20, ge=1, le=100)
    embed_max_attempts: int = 3
    embed_rate_limit_max_retries: int = 5
    pending_timeout_hours: float = 24.0
    single_item_delay_seconds: int = 30
    dynamic_batch_sizing: bool = True
    worker_poll_interval: float = 2.0

    # === App Config ===
    app_env: str = "development"
    log_level: str = "INFO"

    def embedding_configured(self) -> bool:
        """Return True when a network embedding provider can be built."""
        return bool(self.embedding_api_key and self.embedding_model)
