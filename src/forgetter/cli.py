"""Command-line entry point for an erasure run.

Every option falls back to the environment (see ``forgetter.config``), so
scheduled jobs can keep configuring the run through variables alone::

    DB_URL=postgres://... AMPLITUDE_KEY=... forgetter --ids ids.json --dry-run

Exit status: 0 success, 1 fatal, 2 partial, 3 cancelled.
"""

import argparse
import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from forgetter.config.settings import Settings
from forgetter.config.validation import get_configuration_summary, validate_or_raise
from forgetter.core.cancellation import CancellationToken, install_signal_handlers
from forgetter.core.context import generate_request_id
from forgetter.core.exceptions import InputError
from forgetter.core.logging import get_logger, log_exception, setup_logging
from forgetter.db.config import open_engine
from forgetter.erasure.coordinator import run_erasure, utc_now
from forgetter.erasure.external import ExternalOptions
from forgetter.erasure.loader import read_identifiers_file
from forgetter.erasure.relational import DeletionProcedure, RelationalOptions
from forgetter.erasure.report import build_fatal_report, render_summary, write_artifacts
from forgetter.erasure.types import EXIT_CODES, ErasureRequest, TerminalStatus
from forgetter.utils.exceptions import ConfigurationError

logger = get_logger(__name__)

# argparse destination -> Settings field
_OVERRIDES = {
    "ids": "ids_json",
    "sql": "sql_path",
    "db_url": "db_url",
    "report_dir": "report_dir",
    "request_id": "request_id",
    "requested_by": "requested_by",
    "reason": "reason",
    "chunk_size": "db_chunk_size",
    "batch_size": "amp_batch_size",
    "concurrency": "amp_concurrency",
    "max_attempts": "amp_max_attempts",
    "log_level": "log_level",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forgetter",
        description="Erase users from the relational store and the analytics service.",
    )
    parser.add_argument("--ids", type=Path, help="JSON array of user ids (IDS_JSON)")
    parser.add_argument("--sql", type=Path, help="Deletion procedure to run per chunk (SQL_PATH)")
    parser.add_argument("--db-url", help="Database connection string (DB_URL)")
    parser.add_argument("--report-dir", type=Path, help="Where report.json and summary.txt go")
    parser.add_argument("--request-id", help="Correlation id; generated when omitted")
    parser.add_argument("--requested-by", help="Who asked for the erasure")
    parser.add_argument("--reason", help="Free-text reason stored with the request")
    parser.add_argument("--chunk-size", type=int, help="Identifiers per transaction (0 = unbounded)")
    parser.add_argument("--batch-size", type=int, help="Identifiers per external request")
    parser.add_argument("--concurrency", type=int, help="External batches in flight")
    parser.add_argument("--max-attempts", type=int, help="Attempts per external batch")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Stage and count, then roll back; no deletions and no external calls",
    )
    parser.add_argument(
        "--record-audit",
        action="store_true",
        default=None,
        help="Write gdpr_deletion_audit rows in each committed chunk",
    )
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Environment settings with command-line options layered on top."""
    overrides: dict[str, Any] = {
        field: getattr(args, dest)
        for dest, field in _OVERRIDES.items()
        if getattr(args, dest) is not None
    }
    if args.dry_run:
        overrides["dry_run"] = True
    if args.record_audit:
        overrides["db_record_audit"] = True
    return Settings(**overrides)


async def execute(settings: Settings) -> int:
    """Run one erasure request end to end and write its artifacts.

    Returns:
        Process exit status
    """
    started_at = utc_now()
    request_id = settings.request_id or generate_request_id()

    try:
        validate_or_raise(settings)
        procedure = DeletionProcedure.from_file(settings.sql_path)
        raw_identifiers = read_identifiers_file(settings.ids_json)
    except (ConfigurationError, InputError) as e:
        log_exception(logger, e, "erasure_run_rejected", request_id=request_id)
        report = build_fatal_report(
            request_id=request_id,
            requested_by=settings.requested_by,
            reason=settings.reason,
            dry_run=settings.dry_run,
            started_at=started_at,
            finished_at=utc_now(),
            error=str(e),
        )
        write_artifacts(report, settings.report_dir)
        sys.stdout.write(render_summary(report))
        return report.exit_code

    logger.info("configuration_loaded", **get_configuration_summary(settings))

    request = ErasureRequest(
        request_id=request_id,
        requested_by=settings.requested_by,
        dry_run=settings.dry_run,
        identifiers=raw_identifiers,
        reason=settings.reason,
    )

    cancel_token = CancellationToken()
    remove_handlers = install_signal_handlers(cancel_token)
    try:
        async with open_engine(settings.get_db_url(), pool_size=settings.db_pool_size) as engine:
            report = await run_erasure(
                request,
                engine=engine,
                procedure=procedure,
                relational_options=RelationalOptions.from_settings(settings),
                external_options=ExternalOptions.from_settings(settings),
                cancel_token=cancel_token,
            )
    finally:
        remove_handlers()

    write_artifacts(report, settings.report_dir)
    sys.stdout.write(render_summary(report))
    return report.exit_code


def main(argv: Sequence[str] | None = None) -> int:
    """Console entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args)
    except ValidationError as e:
        sys.stderr.write(f"forgetter: invalid configuration\n{e}\n")
        return EXIT_CODES[TerminalStatus.FATAL]

    setup_logging(
        log_level=settings.log_level,
        json_format=settings.ENVIRONMENT == "production",
    )
    return asyncio.run(execute(settings))


if __name__ == "__main__":
    raise SystemExit(main())
