"""Configuration module for forgetter."""

from forgetter.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
