"""YAML configuration loader with environment variable overrides.

# ─── CONFIGURATION HIERARCHY ──────────────────────────────────────────
#
#   1. config/config.yaml : static defaults checked into the repo
#   2. .env file          : local overrides (not committed)
#   3. Environment vars   : deploy-time values
#
# load_config() reads the YAML first and deep-merges the Settings-derived
# values on top, so every section can be overridden per environment.
# apply_yaml_defaults() feeds the chunking, search and pipeline sections
# back into Settings for every field the environment left unset.
# ──────────────────────────────────────────────────────────────────────
"""

from pathlib import Path

import yaml

from kbindex.config.settings import Settings


def load_config(path: str = "config/config.yaml", settings: Settings | None = None) -> dict:
    """Load YAML config and merge with environment-based Settings.

    Args:
        path: Path to the YAML configuration file.
        settings: Optional pre-built Settings; a fresh one is read otherwise.

    Returns:
        Fully resolved configuration dictionary.
    """
    config_path = Path(path)
    if config_path.exists():
        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}
    else:
        yaml_config = {}

    settings = settings or Settings()
    env_overrides = {
        "app": {
            "env": settings.app_env,
        },
        "embedding": {
            "provider": settings.embedding_provider,
            "base_url": settings.embedding_base_url,
            "model": settings.embedding_model,
            "configured": settings.embedding_configured(),
        },
        "storage": {
            "db_path": settings.kb_db_path,
            "content_dir": settings.content_dir,
        },
        "logging": {
            "level": settings.log_level,
        },
    }

    _deep_merge(yaml_config, env_overrides)
    return yaml_config


# YAML section -> {key: Settings field}
_SETTINGS_KEYS: dict[str, dict[str, str]] = {
    "chunking": {
        "target_tokens": "chunk_target_tokens",
        "overlap_tokens": "chunk_overlap_tokens",
        "min_tokens": "chunk_min_tokens",
        "max_tokens": "chunk_max_tokens",
    },
    "search": {
        "default_top_k": "search_default_top_k",
        "max_top_k": "search_max_top_k",
        "max_query_length": "search_max_query_length",
        "max_scan_vectors": "search_max_scan_vectors",
    },
    "pipeline": {
        "batch_size": "pipeline_batch_size",
        "embed_batch_size": "embed_batch_size",
        "pending_timeout_hours": "pending_timeout_hours",
    },
}


def apply_yaml_defaults(settings: Settings, config: dict) -> Settings:
    """Return Settings with YAML values for every mapped field not set explicitly.

    Fields that came from the environment, the .env file or constructor
    arguments keep their values.  The result is validated again.
    """
    updates = {}
    for section, keys in _SETTINGS_KEYS.items():
        values = config.get(section) or {}
        for key, field in keys.items():
            if key in values and field not in settings.model_fields_set:
                updates[field] = values[key]
    if not updates:
        return settings

    explicit = settings.model_dump(include=settings.model_fields_set)
    return Settings(_env_file=None, **explicit, **updates)


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
