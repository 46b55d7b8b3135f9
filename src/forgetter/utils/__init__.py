"""Utility modules for forgetter."""

from forgetter.utils.exceptions import (
    ConfigurationError,
    ForgetterError,
)

__all__ = [
    "ForgetterError",
    "ConfigurationError",
]
