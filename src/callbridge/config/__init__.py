"""Configuration loading."""

from callbridge.config.config_manager import ConfigError, ConfigManager

__all__ = ["ConfigError", "ConfigManager"]
