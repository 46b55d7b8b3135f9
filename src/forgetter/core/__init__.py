"""Core services and utilities for forgetter."""

from .cancellation import CancellationToken, install_signal_handlers
from .context import (
    RunContext,
    create_context,
    generate_request_id,
    get_current_context,
    get_current_context_or_none,
    reset_context,
    run_context,
    set_context,
)
from .exceptions import (
    CancellationRequested,
    ContextNotSetError,
    ExternalPermanentError,
    ExternalTransientError,
    InputError,
    RelationalError,
)

__all__ = [
    # Cancellation
    "CancellationToken",
    "install_signal_handlers",
    # Context
    "RunContext",
    "create_context",
    "generate_request_id",
    "get_current_context",
    "get_current_context_or_none",
    "reset_context",
    "run_context",
    "set_context",
    # Exceptions
    "CancellationRequested",
    "ContextNotSetError",
    "ExternalPermanentError",
    "ExternalTransientError",
    "InputError",
    "RelationalError",
]
