"""Type definitions for erasure runs.

This module defines the values that flow between the erasure stages: the
incoming request, the deduplicated identifier set, the per-stage outcomes and
the final report.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from forgetter.core.context import generate_request_id
from forgetter.core.exceptions import RelationalError

STAGING_TABLE = "ids_to_delete"
"""Well-known staging relation the deletion procedure reads from."""


class RelationalStatus(str, Enum):
    """Status of the relational purge stage."""

    SUCCEEDED = "succeeded"
    """Every chunk committed (or, in a dry run, staged and rolled back)."""

    FAILED = "failed"
    """A chunk failed; later chunks were not attempted."""

    SKIPPED = "skipped"
    """The run ended before relational work started."""

    CANCELLED = "cancelled"
    """Cancellation was observed between chunks; earlier chunks stay committed."""


class ExternalStatus(str, Enum):
    """Status of the external eraser stage."""

    COMPLETED = "completed"
    """Every batch was dispatched and reached a final outcome."""

    SIMULATED = "simulated"
    """Dry run: every identifier marked ok without network calls."""

    SKIPPED = "skipped"
    """Not invoked (input or relational failure, or cancelled earlier)."""

    CANCELLED = "cancelled"
    """Cancellation stopped some batches from being dispatched."""


class TerminalStatus(str, Enum):
    """Terminal status of an erasure run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FATAL = "fatal"
    CANCELLED = "cancelled"


class Stage(str, Enum):
    """Stages a run can fail in."""

    INPUT = "input"
    RELATIONAL = "relational"
    EXTERNAL = "external"


EXIT_CODES: dict[TerminalStatus, int] = {
    TerminalStatus.SUCCESS: 0,
    TerminalStatus.FATAL: 1,
    TerminalStatus.PARTIAL: 2,
    TerminalStatus.CANCELLED: 3,
}


class ErasureRequest(BaseModel):
    """An erasure request as handed to the coordinator."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=generate_request_id)
    """Opaque token for audit correlation and idempotency."""

    requested_by: str = "unknown"
    """Who asked for the erasure."""

    dry_run: bool = False
    """When true, nothing is mutated in either store."""

    identifiers: Any = ()
    """Raw decoded input, before validation and deduplication."""

    reason: str | None = None
    """Free-text reason recorded with the request."""

    @property
    def total_requested(self) -> int:
        """Number of raw elements, or 0 when the input is not an array."""
        return len(self.identifiers) if isinstance(self.identifiers, list | tuple) else 0


@dataclass(frozen=True)
class IdentifierSet:
    """Deduplicated identifiers, in first-occurrence order."""

    identifiers: tuple[str, ...]
    total_requested: int

    @property
    def unique_count(self) -> int:
        """Number of distinct identifiers."""
        return len(self.identifiers)

    def __len__(self) -> int:
        return len(self.identifiers)

    def __iter__(self):
        return iter(self.identifiers)

    def __contains__(self, item: object) -> bool:
        return item in self.identifiers


@dataclass
class RelationalOutcome:
    """Outcome of the relational purge stage."""

    status: RelationalStatus
    chunks_total: int = 0
    chunks_committed: int = 0
    identifiers_committed: int = 0
    staged_count: int = 0
    failed_chunk: int | None = None
    error: str | None = None
    dry_run: bool = False

    @classmethod
    def skipped(cls, dry_run: bool = False) -> "RelationalOutcome":
        """Outcome for a run that never reached the relational stage."""
        return cls(status=RelationalStatus.SKIPPED, dry_run=dry_run)

    @classmethod
    def from_error(cls, error: RelationalError, dry_run: bool = False) -> "RelationalOutcome":
        """Outcome for a purge that stopped on a failing chunk."""
        return cls(
            status=RelationalStatus.FAILED,
            chunks_total=error.chunks_total,
            chunks_committed=error.chunks_committed,
            identifiers_committed=error.identifiers_committed,
            failed_chunk=error.chunk_index,
            error=str(error.args[0]),
            dry_run=dry_run,
        )

    @property
    def partially_applied(self) -> bool:
        """Whether some chunks committed before the stage stopped early."""
        return (
            self.status in (RelationalStatus.FAILED, RelationalStatus.CANCELLED)
            and self.chunks_committed > 0
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "chunks_total": self.chunks_total,
            "chunks_committed": self.chunks_committed,
            "identifiers_committed": self.identifiers_committed,
            "staged_count": self.staged_count,
            "failed_chunk": self.failed_chunk,
            "error": self.error,
            "dry_run": self.dry_run,
        }


@dataclass(frozen=True)
class IdentifierResult:
    """External erasure result for one identifier."""

    id: str
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, omitting the error for successes."""
        result: dict[str, Any] = {"id": self.id, "ok": self.ok}
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class BatchResult:
    """How a single external batch ended."""

    index: int
    size: int
    attempts: int
    ok: bool
    error: str | None = None


@dataclass
class ExternalOutcome:
    """Outcome of the external eraser stage: one entry per identifier."""

    status: ExternalStatus
    results: dict[str, IdentifierResult] = field(default_factory=dict)
    batches: list[BatchResult] = field(default_factory=list)

    @classmethod
    def skipped(cls) -> "ExternalOutcome":
        """Outcome for a run where the external stage never ran."""
        return cls(status=ExternalStatus.SKIPPED)

    def record(self, identifier: str, ok: bool, error: str | None = None) -> None:
        """Record the outcome of one identifier.

        Raises:
            ValueError: If the identifier already has an outcome
        """
        if identifier in self.results:
            raise ValueError(f"Duplicate external outcome for identifier {identifier!r}")
        self.results[identifier] = IdentifierResult(id=identifier, ok=ok, error=error)

    @property
    def successful(self) -> int:
        """Count of identifiers erased from the external service."""
        return sum(1 for r in self.results.values() if r.ok)

    @property
    def failed(self) -> int:
        """Count of identifiers not erased from the external service."""
        return sum(1 for r in self.results.values() if not r.ok)

    @property
    def failed_identifiers(self) -> list[str]:
        """Identifiers that were not erased."""
        return [r.id for r in self.results.values() if not r.ok]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "successful": self.successful,
            "failed": self.failed,
            "batches_total": len(self.batches),
            "batch_attempts": [b.attempts for b in sorted(self.batches, key=lambda b: b.index)],
            "results": [r.to_dict() for r in self.results.values()],
        }


class InputSummary(BaseModel):
    """Identifier counts recorded in the report."""

    model_config = ConfigDict(frozen=True)

    total_requested: int = 0
    unique_count: int = 0


class Report(BaseModel):
    """Terminal artifact of an erasure run. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    requested_by: str
    reason: str | None = None
    dry_run: bool

    started_at: datetime
    finished_at: datetime

    input: InputSummary
    relational: dict[str, Any]
    external: dict[str, Any]

    terminal_status: TerminalStatus
    failed_stage: Stage | None = None
    error: str | None = None
    """Message of the failure that decided a fatal or cancelled status."""

    affected_count: int = 0
    """Identifiers affected by the failed stage (0 on success)."""

    consistency_note: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def exit_code(self) -> int:
        """Process exit status for this report."""
        return EXIT_CODES[self.terminal_status]

    @property
    def duration_seconds(self) -> float:
        """Wall-clock duration of the run."""
        return (self.finished_at - self.started_at).total_seconds()
