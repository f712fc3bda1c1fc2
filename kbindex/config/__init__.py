"""Configuration module; exports Settings, load_config and apply_yaml_defaults."""

from kbindex.config.loader import apply_yaml_defaults, load_config
from kbindex.config.settings import Settings

__all__ = ["Settings", "apply_yaml_defaults", "load_config"]
