"""Configuration module for AppForge."""

from .logging import JSONFormatter, SanitizingFilter, TextFormatter, configure_logging
from .settings import Settings, get_config, get_settings

__all__ = [
    "Settings",
    "get_config",
    "get_settings",
    "configure_logging",
    "JSONFormatter",
    "SanitizingFilter",
    "TextFormatter",
]
