"""Configuration module for trialmatch."""

from trialmatch.config.settings import Settings, get_settings
from trialmatch.config.sources import SourceConfig, get_source_config, load_source_configs

__all__ = ["Settings", "get_settings", "SourceConfig", "get_source_config", "load_source_configs"]
