"""Report aggregation and the run artifacts.

A finished run leaves two files behind: ``report.json`` for machines and
``summary.txt`` for the operator who triggered the job. Both are written from
the same immutable ``Report``.
"""

from datetime import datetime
from pathlib import Path

from forgetter.core.logging import get_logger
from forgetter.erasure.types import (
    ExternalOutcome,
    ExternalStatus,
    IdentifierSet,
    InputSummary,
    RelationalOutcome,
    RelationalStatus,
    Report,
    Stage,
    TerminalStatus,
)

logger = get_logger(__name__)

REPORT_FILENAME = "report.json"
SUMMARY_FILENAME = "summary.txt"


def decide_terminal_status(
    relational: RelationalOutcome,
    external: ExternalOutcome,
) -> tuple[TerminalStatus, Stage | None]:
    """Terminal status and failing stage for a run that got past input.

    Relational failure is fatal regardless of anything else. Cancellation in
    either stage wins over partial external failure.
    """
    if relational.status == RelationalStatus.FAILED:
        return TerminalStatus.FATAL, Stage.RELATIONAL
    if relational.status in (RelationalStatus.CANCELLED, RelationalStatus.SKIPPED):
        return TerminalStatus.CANCELLED, Stage.RELATIONAL
    if external.status == ExternalStatus.CANCELLED:
        return TerminalStatus.CANCELLED, Stage.EXTERNAL
    if external.failed:
        return TerminalStatus.PARTIAL, Stage.EXTERNAL
    return TerminalStatus.SUCCESS, None


def count_affected(
    identifiers: IdentifierSet,
    relational: RelationalOutcome,
    external: ExternalOutcome,
    failed_stage: Stage | None,
) -> int:
    """Identifiers the failing stage left not fully erased."""
    if failed_stage is None:
        return 0
    if failed_stage == Stage.RELATIONAL:
        return identifiers.unique_count - relational.identifiers_committed
    if failed_stage == Stage.EXTERNAL:
        return external.failed
    return identifiers.total_requested


def consistency_note(
    relational: RelationalOutcome,
    external: ExternalOutcome,
) -> str | None:
    """Explain any state that spans stores or chunks, or None if consistent."""
    notes = []
    if relational.partially_applied:
        notes.append(
            f"{relational.chunks_committed} of {relational.chunks_total} relational chunks "
            f"({relational.identifiers_committed} identifiers) were committed before the run "
            "stopped and stay committed. Chunks are applied at least once: re-running this "
            "request executes the deletion procedure again for those identifiers, so the "
            "procedure must be idempotent."
        )
    if external.failed and external.status != ExternalStatus.SKIPPED:
        notes.append(
            f"{external.failed} identifiers were erased from the database but not from the "
            "external analytics service. Re-submit them from the failed entries in report.json."
        )
    return " ".join(notes) or None


def build_report(
    *,
    request_id: str,
    requested_by: str,
    reason: str | None,
    dry_run: bool,
    started_at: datetime,
    finished_at: datetime,
    identifiers: IdentifierSet,
    relational: RelationalOutcome,
    external: ExternalOutcome,
) -> Report:
    """Aggregate the stage outcomes of a run that got past input validation."""
    terminal_status, failed_stage = decide_terminal_status(relational, external)

    error = None
    if failed_stage == Stage.RELATIONAL:
        error = relational.error
    elif terminal_status == TerminalStatus.CANCELLED:
        error = "Cancelled before every external batch was dispatched"

    return Report(
        request_id=request_id,
        requested_by=requested_by,
        reason=reason,
        dry_run=dry_run,
        started_at=started_at,
        finished_at=finished_at,
        input=InputSummary(
            total_requested=identifiers.total_requested,
            unique_count=identifiers.unique_count,
        ),
        relational=relational.to_dict(),
        external=external.to_dict(),
        terminal_status=terminal_status,
        failed_stage=failed_stage,
        error=error,
        affected_count=count_affected(identifiers, relational, external, failed_stage),
        consistency_note=consistency_note(relational, external),
    )


def build_fatal_report(
    *,
    request_id: str,
    requested_by: str,
    reason: str | None,
    dry_run: bool,
    started_at: datetime,
    finished_at: datetime,
    error: str,
    failed_stage: Stage = Stage.INPUT,
    total_requested: int = 0,
) -> Report:
    """Report for a run that stopped before any store was touched."""
    return Report(
        request_id=request_id,
        requested_by=requested_by,
        reason=reason,
        dry_run=dry_run,
        started_at=started_at,
        finished_at=finished_at,
        input=InputSummary(total_requested=total_requested, unique_count=0),
        relational=RelationalOutcome.skipped(dry_run).to_dict(),
        external=ExternalOutcome.skipped().to_dict(),
        terminal_status=TerminalStatus.FATAL,
        failed_stage=failed_stage,
        error=error,
        affected_count=total_requested,
    )


def render_summary(report: Report) -> str:
    """Human-readable summary of a report."""
    relational = report.relational
    external = report.external

    lines = [
        f"Erasure request {report.request_id}",
        f"Requested by:     {report.requested_by}",
    ]
    if report.reason:
        lines.append(f"Reason:           {report.reason}")
    lines.extend(
        [
            f"Mode:             {'DRY RUN (nothing was modified)' if report.dry_run else 'live'}",
            f"Status:           {report.terminal_status.value.upper()} (exit code {report.exit_code})",
            f"Failed stage:     {report.failed_stage.value if report.failed_stage else 'none'}",
            f"Affected IDs:     {report.affected_count}",
            f"Started:          {report.started_at.isoformat()}",
            f"Finished:         {report.finished_at.isoformat()}",
            f"Duration:         {report.duration_seconds:.2f}s",
            "",
            f"Input:            {report.input.total_requested} requested, "
            f"{report.input.unique_count} unique",
            f"Relational:       {relational['status']}, "
            f"{relational['chunks_committed']}/{relational['chunks_total']} chunks committed, "
            f"{relational['staged_count']} staged",
            f"External:         {external['status']}, "
            f"{external['successful']} ok, {external['failed']} failed "
            f"in {external['batches_total']} batches",
        ]
    )
    if report.error:
        lines.extend(["", f"Error: {report.error}"])
    if report.consistency_note:
        lines.extend(["", f"Consistency: {report.consistency_note}"])
    return "\n".join(lines) + "\n"


def write_artifacts(report: Report, output_dir: Path | str) -> tuple[Path, Path]:
    """Write report.json and summary.txt.

    Returns:
        Paths of the report and the summary
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    report_path = output_dir / REPORT_FILENAME
    summary_path = output_dir / SUMMARY_FILENAME

    payload = report.model_dump_json(indent=2)
    report_path.write_text(payload + "\n", encoding="utf-8")
    summary_path.write_text(render_summary(report), encoding="utf-8")

    logger.info(
        "artifacts_written",
        report=str(report_path),
        summary=str(summary_path),
        terminal_status=report.terminal_status.value,
    )
    return report_path, summary_path
