"""Chunked, transactional purge of the relational store.

Identifiers are staged into a temporary relation with one set-based load per
chunk, and the reviewed deletion procedure joins against that relation. This
keeps query plans bounded no matter how many identifiers a request carries:
the procedure never sees a literal ``IN (...)`` list.

Chunks run strictly one after another. Each chunk is its own transaction:
it commits or rolls back as a whole, but a failure in chunk k does not undo
chunks 1..k-1. Runs are therefore at-least-once per chunk, not atomic across
the whole identifier set.
"""

import json
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncTransaction

from forgetter.core.exceptions import RelationalError
from forgetter.core.logging import LogContext, get_logger, log_database_step, log_exception
from forgetter.erasure.partition import partition
from forgetter.erasure.types import STAGING_TABLE, RelationalOutcome, RelationalStatus
from forgetter.utils.exceptions import ConfigurationError

if TYPE_CHECKING:
    from forgetter.config.settings import Settings
    from forgetter.core.cancellation import CancellationToken

logger = get_logger(__name__)

# Terminators at end of line; procedures for non-PostgreSQL stores are plain statement lists
_STATEMENT_SPLIT = re.compile(r";\s*(?:\n|$)")


@dataclass(frozen=True)
class RelationalOptions:
    """Configuration of the relational purge."""

    chunk_size: int | None = None
    """Identifiers per transaction; None stages everything in one chunk."""

    statement_timeout_ms: int = 300_000
    """Per-statement guard applied inside every chunk transaction."""

    record_audit: bool = False
    """Write a gdpr_deletion_audit row per identifier in committed chunks."""

    def __post_init__(self) -> None:
        if self.chunk_size is not None and self.chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.statement_timeout_ms < 1:
            raise ValueError("statement_timeout_ms must be positive")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RelationalOptions":
        """Build options from application settings."""
        return cls(
            chunk_size=settings.db_chunk_size,
            statement_timeout_ms=settings.db_stmt_timeout_ms,
            record_audit=settings.db_record_audit,
        )


@dataclass(frozen=True)
class AuditStamp:
    """Request metadata written alongside each erased identifier."""

    request_id: str
    requested_by: str
    notes: str | None = None


@dataclass(frozen=True)
class DeletionProcedure:
    """The reviewed deletion script, treated as an opaque unit of work.

    The script reads ``ids_to_delete(user_id text)`` and performs every
    dependent and primary deletion. It must be idempotent: a chunk that
    committed is never re-run by this engine, but an operator re-running a
    request will execute it again over already-deleted users.
    """

    sql: str
    source: str = "<inline>"

    @classmethod
    def from_file(cls, path: Path | str) -> "DeletionProcedure":
        """Load the procedure from disk.

        Raises:
            ConfigurationError: If the file is missing, unreadable or empty
        """
        path = Path(path)
        try:
            sql = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Cannot read deletion procedure {path}: {e}") from e
        if not sql.strip():
            raise ConfigurationError(f"Deletion procedure {path} is empty")
        return cls(sql=sql, source=str(path))

    def statements(self) -> list[str]:
        """Split the script into individual statements."""
        return [s.strip() for s in _STATEMENT_SPLIT.split(self.sql) if _has_sql(s)]

    async def run(self, conn: AsyncConnection) -> None:
        """Execute the procedure inside the connection's open transaction."""
        if conn.dialect.name == "postgresql":
            # Simple-query protocol: the whole script (DO blocks included) in one round-trip
            raw = await conn.get_raw_connection()
            await raw.driver_connection.execute(self.sql)
            return

        for statement in self.statements():
            await conn.exec_driver_sql(statement)


def _has_sql(fragment: str) -> bool:
    """Whether a fragment holds anything other than whitespace and line comments."""
    for line in fragment.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("--"):
            return True
    return False


async def purge_relational(
    engine: AsyncEngine,
    identifiers: Sequence[str],
    procedure: DeletionProcedure,
    options: RelationalOptions | None = None,
    *,
    dry_run: bool = False,
    audit: AuditStamp | None = None,
    cancel_token: "CancellationToken | None" = None,
) -> RelationalOutcome:
    """Run the deletion procedure over the identifiers, one chunk at a time.

    Args:
        engine: Engine owned by the caller
        identifiers: Deduplicated identifiers
        procedure: Deletion procedure to execute per chunk
        options: Chunking and timeout configuration
        dry_run: Stage and count each chunk, skip the procedure and roll back
        audit: When set (and not a dry run), audit rows are written per chunk
        cancel_token: Checked before each chunk

    Returns:
        RelationalOutcome with status SUCCEEDED, or CANCELLED if a
        cancellation was observed between chunks

    Raises:
        RelationalError: If any chunk fails. Remaining chunks are not attempted.
    """
    options = options or RelationalOptions()
    chunks = partition(list(identifiers), options.chunk_size)
    outcome = RelationalOutcome(
        status=RelationalStatus.SUCCEEDED,
        chunks_total=len(chunks),
        dry_run=dry_run,
    )

    logger.info(
        "relational_purge_started",
        identifiers=len(identifiers),
        chunks=len(chunks),
        chunk_size=options.chunk_size,
        procedure=procedure.source,
    )

    for index, chunk in enumerate(chunks, start=1):
        if cancel_token is not None and cancel_token.is_cancelled:
            outcome.status = RelationalStatus.CANCELLED
            outcome.error = f"Cancelled before chunk {index}/{len(chunks)} ({cancel_token.reason})"
            logger.warning(
                "relational_purge_cancelled",
                chunk=index,
                chunks_committed=outcome.chunks_committed,
            )
            return outcome

        with LogContext(chunk=index, chunks_total=len(chunks)):
            started = time.perf_counter()
            try:
                staged = await _purge_chunk(
                    engine,
                    chunk,
                    procedure,
                    options,
                    dry_run=dry_run,
                    audit=None if dry_run else audit,
                )
            except Exception as e:
                outcome.status = RelationalStatus.FAILED
                outcome.failed_chunk = index
                outcome.error = str(e)
                log_exception(
                    logger,
                    e,
                    "relational_chunk_failed",
                    chunk_identifiers=len(chunk),
                    chunks_committed=outcome.chunks_committed,
                )
                raise RelationalError(
                    f"Chunk {index}/{len(chunks)} failed: {e}",
                    chunk_index=index,
                    chunks_total=len(chunks),
                    chunks_committed=outcome.chunks_committed,
                    identifiers_committed=outcome.identifiers_committed,
                ) from e

            outcome.staged_count += staged
            if not dry_run:
                outcome.chunks_committed += 1
                outcome.identifiers_committed += len(chunk)

            logger.info(
                "relational_chunk_rolled_back" if dry_run else "relational_chunk_committed",
                chunk_identifiers=len(chunk),
                staged=staged,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )

    logger.info(
        "relational_purge_completed",
        chunks_committed=outcome.chunks_committed,
        staged=outcome.staged_count,
    )
    return outcome


async def _purge_chunk(
    engine: AsyncEngine,
    chunk: Sequence[str],
    procedure: DeletionProcedure,
    options: RelationalOptions,
    *,
    dry_run: bool,
    audit: AuditStamp | None,
) -> int:
    """Stage one chunk and run the procedure in a single transaction.

    Returns:
        Number of identifiers staged
    """
    async with engine.connect() as conn:
        transaction = await conn.begin()
        try:
            staged = await _stage_and_delete(
                conn, chunk, None if dry_run else procedure, options, audit
            )
            if dry_run:
                await transaction.rollback()
            else:
                await transaction.commit()
        except BaseException:
            await _safe_rollback(transaction)
            raise
    return staged


async def _stage_and_delete(
    conn: AsyncConnection,
    chunk: Sequence[str],
    procedure: DeletionProcedure | None,
    options: RelationalOptions,
    audit: AuditStamp | None,
) -> int:
    """Apply the timeout, stage the chunk, run the procedure and audit.

    A dry run passes no procedure: the chunk is staged and counted only, so
    no locks are taken on the tables the procedure would delete from.
    """
    is_postgres = conn.dialect.name == "postgresql"

    if is_postgres:
        await conn.execute(
            text(f"SET LOCAL statement_timeout = {int(options.statement_timeout_ms)}")
        )

    started = time.perf_counter()
    await _create_staging(conn, is_postgres)
    await _load_staging(conn, chunk, is_postgres)
    staged = (await conn.execute(text(f"SELECT count(*) FROM {STAGING_TABLE}"))).scalar_one()
    log_database_step(logger, "stage", (time.perf_counter() - started) * 1000, staged=staged)

    if procedure is not None:
        started = time.perf_counter()
        await procedure.run(conn)
        log_database_step(logger, "procedure", (time.perf_counter() - started) * 1000)

    if audit is not None:
        await _write_audit(conn, audit)

    if not is_postgres:
        # PostgreSQL drops it ON COMMIT; elsewhere it would outlive the chunk
        await conn.execute(text(f"DROP TABLE temp.{STAGING_TABLE}"))

    return int(staged)


async def _create_staging(conn: AsyncConnection, is_postgres: bool) -> None:
    """Create a fresh staging relation, discarding any leftover from this session."""
    if is_postgres:
        await conn.execute(text(f"DROP TABLE IF EXISTS pg_temp.{STAGING_TABLE}"))
        await conn.execute(
            text(f"CREATE TEMP TABLE {STAGING_TABLE} (user_id text PRIMARY KEY) ON COMMIT DROP")
        )
    else:
        await conn.execute(text(f"DROP TABLE IF EXISTS temp.{STAGING_TABLE}"))
        await conn.execute(text(f"CREATE TEMP TABLE {STAGING_TABLE} (user_id TEXT PRIMARY KEY)"))


async def _load_staging(conn: AsyncConnection, chunk: Sequence[str], is_postgres: bool) -> None:
    """Bulk-load the chunk with a single set-based statement."""
    if is_postgres:
        await conn.execute(
            text(f"INSERT INTO {STAGING_TABLE} (user_id) SELECT unnest(CAST(:ids AS text[]))"),
            {"ids": list(chunk)},
        )
    else:
        await conn.execute(
            text(f"INSERT INTO {STAGING_TABLE} (user_id) SELECT value FROM json_each(:ids)"),
            {"ids": json.dumps(list(chunk))},
        )


async def _write_audit(conn: AsyncConnection, audit: AuditStamp) -> None:
    """Record every staged identifier in the audit table."""
    await conn.execute(
        text(
            "INSERT INTO gdpr_deletion_audit (public_id, request_id, deleted_by, rows_affected, notes) "
            f"SELECT user_id, :request_id, :deleted_by, 0, :notes FROM {STAGING_TABLE} WHERE true "
            "ON CONFLICT (public_id, request_id) DO NOTHING"
        ),
        {
            "request_id": audit.request_id,
            "deleted_by": audit.requested_by,
            "notes": audit.notes,
        },
    )


async def _safe_rollback(transaction: AsyncTransaction) -> None:
    """Roll back, logging rather than masking the original failure."""
    if not transaction.is_active:
        return
    try:
        await transaction.rollback()
    except Exception as e:
        logger.warning("relational_rollback_failed", error_type=type(e).__name__, error_message=str(e))
