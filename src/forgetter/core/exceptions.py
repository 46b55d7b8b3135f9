"""Exceptions raised by the erasure stages.

Each stage has its own failure type so the coordinator can decide, in one
place, whether a failure ends the run, degrades it to partial, or only marks
a handful of identifiers as not erased.
"""

from forgetter.utils.exceptions import ForgetterError


class ContextNotSetError(ForgetterError):
    """Raised when attempting to access the run context outside of a run."""

    def __init__(self, message: str = "Run context is not set"):
        super().__init__(message)


class InputError(ForgetterError):
    """Raised when the identifier input is empty or malformed.

    Fatal: the run stops before any store is touched.

    Attributes:
        position: Index of the offending element, when a single element is at fault
    """

    def __init__(self, message: str, position: int | None = None):
        super().__init__(message)
        self.position = position

    def __str__(self) -> str:
        if self.position is None:
            return f"InputError: {self.args[0]}"
        return f"InputError: {self.args[0]} (position={self.position})"


class RelationalError(ForgetterError):
    """Raised when staging, the deletion procedure, or a commit fails.

    Fatal to the whole run. Chunks committed before the failing one stay
    committed.

    Attributes:
        chunk_index: 1-based index of the chunk that failed
        chunks_total: Number of chunks in the run
        chunks_committed: Chunks durably committed before the failure
        identifiers_committed: Identifiers covered by the committed chunks
    """

    def __init__(
        self,
        message: str,
        chunk_index: int,
        chunks_total: int,
        chunks_committed: int,
        identifiers_committed: int = 0,
    ):
        super().__init__(message)
        self.chunk_index = chunk_index
        self.chunks_total = chunks_total
        self.chunks_committed = chunks_committed
        self.identifiers_committed = identifiers_committed

    def __str__(self) -> str:
        return (
            f"RelationalError: {self.args[0]} "
            f"(chunk={self.chunk_index}/{self.chunks_total}, committed={self.chunks_committed})"
        )


class ExternalTransientError(ForgetterError):
    """Retryable failure of a single external batch (5xx, 429, transport).

    Attributes:
        status_code: HTTP status, or None for transport-level failures
        detail: Response body or transport error text
    """

    def __init__(self, detail: str, status_code: int | None = None):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail

    def __str__(self) -> str:
        if self.status_code is None:
            return f"transport error: {self.detail}"
        return f"HTTP {self.status_code}: {self.detail}"


class ExternalPermanentError(ForgetterError):
    """Non-retryable failure of a single external batch (4xx).

    Attributes:
        status_code: HTTP status returned by the service
        detail: Response body
    """

    def __init__(self, detail: str, status_code: int):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail

    def __str__(self) -> str:
        return f"HTTP {self.status_code}: {self.detail}"


class CancellationRequested(ForgetterError):
    """Raised when a termination signal is observed at a checkpoint.

    Attributes:
        stage: Where the cancellation was observed
        reason: What requested it (e.g. the signal name)
    """

    def __init__(self, stage: str, reason: str | None = None):
        super().__init__(f"Run cancelled before {stage}")
        self.stage = stage
        self.reason = reason

    def __str__(self) -> str:
        if self.reason:
            return f"CancellationRequested: {self.args[0]} ({self.reason})"
        return f"CancellationRequested: {self.args[0]}"
