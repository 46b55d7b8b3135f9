"""Run context for async-safe log correlation.

This module carries the identity of the erasure run being executed using
Python's contextvars, so every log line emitted by either stage (including
lines from concurrently running external batches) can be tied back to the
request that caused it.

Usage:
    from forgetter.core.context import create_context, run_context

    ctx = create_context(request_id="b5c1...", requested_by="dpo@example.com")

    with run_context(ctx):
        await purge_relational(...)
"""

from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field
from uuid_utils import uuid7

from forgetter.core.exceptions import ContextNotSetError


def generate_request_id() -> str:
    """Generate a time-ordered request identifier."""
    return str(uuid7())


class RunContext(BaseModel):
    """Context for a single erasure run."""

    model_config = {"frozen": True}

    request_id: str = Field(default_factory=generate_request_id)
    requested_by: str = "unknown"
    dry_run: bool = False
    initiated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_log_dict(self) -> dict[str, Any]:
        """Fields added to every log entry emitted inside the run."""
        return {
            "request_id": self.request_id,
            "requested_by": self.requested_by,
            "dry_run": self.dry_run,
        }


# =============================================================================
# Context Variable Management
# =============================================================================

_run_context: ContextVar[RunContext | None] = ContextVar("run_context", default=None)


def get_current_context() -> RunContext:
    """Get the current run context.

    Raises:
        ContextNotSetError: If no context is set in the current execution context
    """
    ctx = _run_context.get()
    if ctx is None:
        raise ContextNotSetError("No run context is set. Use run_context() context manager.")
    return ctx


def get_current_context_or_none() -> RunContext | None:
    """Get the current run context, or None if not set."""
    return _run_context.get()


def set_context(ctx: RunContext) -> Token[RunContext | None]:
    """Set the run context and return a token for restoration.

    This is a low-level API. Prefer using the run_context() context manager.
    """
    return _run_context.set(ctx)


def reset_context(token: Token[RunContext | None]) -> None:
    """Reset the context to its previous value using a token."""
    _run_context.reset(token)


@contextmanager
def run_context(ctx: RunContext):
    """Context manager for setting the run context.

    Tasks spawned inside the block (external batches) inherit the context.

    Args:
        ctx: The context to set for the duration of the block

    Yields:
        The context that was set
    """
    token = set_context(ctx)
    try:
        yield ctx
    finally:
        reset_context(token)


def create_context(
    *,
    request_id: str | None = None,
    requested_by: str = "unknown",
    dry_run: bool = False,
) -> RunContext:
    """Create a RunContext, generating a request id when none is supplied."""
    return RunContext(
        request_id=request_id or generate_request_id(),
        requested_by=requested_by,
        dry_run=dry_run,
    )
