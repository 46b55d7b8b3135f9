"""Run coordinator: sequences the erasure stages and builds the report.

Control flow for one request::

    load identifiers -> relational purge -> external erasure -> report

- An input failure ends the run before any store is touched.
- A relational failure ends the run; the external service is never called,
  so it never forgets a user the database still holds.
- External failures are isolated per identifier and degrade the run to
  ``partial``.
- Cancellation is checked before the relational stage, before each chunk
  and before each external batch; what already committed stays committed.
"""

import asyncio
from collections.abc import Callable
from contextlib import AsyncExitStack
from datetime import UTC, datetime

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from forgetter.core.cancellation import CancellationToken
from forgetter.core.context import create_context, run_context
from forgetter.core.exceptions import CancellationRequested, InputError, RelationalError
from forgetter.core.logging import get_logger, log_exception
from forgetter.erasure.external import (
    ExternalOptions,
    SleepFunc,
    erase_external,
    open_http_client,
    simulate_external,
)
from forgetter.erasure.loader import load_identifiers
from forgetter.erasure.relational import (
    AuditStamp,
    DeletionProcedure,
    RelationalOptions,
    purge_relational,
)
from forgetter.erasure.report import build_fatal_report, build_report
from forgetter.erasure.types import (
    ErasureRequest,
    ExternalOutcome,
    RelationalOutcome,
    RelationalStatus,
    Report,
    Stage,
)

logger = get_logger(__name__)


def utc_now() -> datetime:
    """Current time in UTC."""
    return datetime.now(UTC)


async def run_erasure(
    request: ErasureRequest,
    *,
    engine: AsyncEngine,
    procedure: DeletionProcedure,
    relational_options: RelationalOptions | None = None,
    external_options: ExternalOptions | None = None,
    http_client: httpx.AsyncClient | None = None,
    cancel_token: CancellationToken | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: SleepFunc = asyncio.sleep,
) -> Report:
    """Execute one erasure run and return its report.

    Args:
        request: The erasure request
        engine: Relational engine, owned by the caller
        procedure: Deletion procedure run against every chunk
        relational_options: Chunking, timeout and audit configuration
        external_options: Batching, concurrency and retry configuration
        http_client: Client for the external service. When omitted, one is
            opened for the external stage and closed afterwards.
        cancel_token: Cooperative cancellation flag
        clock: Source of the report timestamps
        sleep: Coroutine used for external backoff delays

    Returns:
        The terminal Report. Stage failures are reported, not raised.
    """
    relational_options = relational_options or RelationalOptions()
    external_options = external_options or ExternalOptions(requester=request.requested_by)
    cancel_token = cancel_token or CancellationToken()
    started_at = clock()

    ctx = create_context(
        request_id=request.request_id,
        requested_by=request.requested_by,
        dry_run=request.dry_run,
    )
    with run_context(ctx):
        logger.info(
            "erasure_run_started",
            identifiers=request.total_requested,
            reason=request.reason,
        )

        try:
            identifiers = load_identifiers(request.identifiers)
        except InputError as e:
            log_exception(logger, e, "erasure_input_rejected")
            report = build_fatal_report(
                request_id=request.request_id,
                requested_by=request.requested_by,
                reason=request.reason,
                dry_run=request.dry_run,
                started_at=started_at,
                finished_at=clock(),
                error=str(e),
                total_requested=request.total_requested,
            )
            _log_finished(report)
            return report

        external = ExternalOutcome.skipped()
        try:
            cancel_token.raise_if_cancelled(Stage.RELATIONAL.value)
            relational = await purge_relational(
                engine,
                identifiers.identifiers,
                procedure,
                relational_options,
                dry_run=request.dry_run,
                audit=AuditStamp(
                    request_id=request.request_id,
                    requested_by=request.requested_by,
                    notes=request.reason,
                )
                if relational_options.record_audit
                else None,
                cancel_token=cancel_token,
            )
        except CancellationRequested as e:
            logger.warning("erasure_run_cancelled", stage=e.stage, reason=e.reason)
            relational = RelationalOutcome.skipped(request.dry_run)
            relational.error = str(e.args[0])
        except RelationalError as e:
            relational = RelationalOutcome.from_error(e, request.dry_run)

        if relational.status == RelationalStatus.SUCCEEDED:
            if request.dry_run:
                external = simulate_external(identifiers.identifiers)
            else:
                external = await _erase_external(
                    identifiers.identifiers,
                    external_options,
                    http_client,
                    cancel_token,
                    sleep,
                )
        else:
            logger.warning("external_erasure_skipped", relational_status=relational.status.value)

        report = build_report(
            request_id=request.request_id,
            requested_by=request.requested_by,
            reason=request.reason,
            dry_run=request.dry_run,
            started_at=started_at,
            finished_at=clock(),
            identifiers=identifiers,
            relational=relational,
            external=external,
        )
        _log_finished(report)
        return report


async def _erase_external(
    identifiers: tuple[str, ...],
    options: ExternalOptions,
    http_client: httpx.AsyncClient | None,
    cancel_token: CancellationToken,
    sleep: SleepFunc,
) -> ExternalOutcome:
    """Run the external stage, owning the HTTP client when none was given."""
    async with AsyncExitStack() as stack:
        if http_client is None:
            http_client = await stack.enter_async_context(open_http_client(options))
        return await erase_external(
            http_client,
            identifiers,
            options,
            cancel_token=cancel_token,
            sleep=sleep,
        )


def _log_finished(report: Report) -> None:
    log = logger.info if report.exit_code == 0 else logger.warning
    log(
        "erasure_run_finished",
        terminal_status=report.terminal_status.value,
        failed_stage=report.failed_stage.value if report.failed_stage else None,
        affected_count=report.affected_count,
        exit_code=report.exit_code,
        duration_seconds=round(report.duration_seconds, 3),
    )
