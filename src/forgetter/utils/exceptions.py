"""Custom exceptions for forgetter."""


class ForgetterError(Exception):
    """Base exception for all forgetter errors."""

    pass


class ConfigurationError(ForgetterError):
    """Error in configuration or settings."""

    pass
