"""Unit tests for the chunked relational purge."""

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from types import SimpleNamespace

import pytest
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncConnection

from forgetter.core.cancellation import CancellationToken
from forgetter.core.exceptions import RelationalError
from forgetter.erasure.relational import (
    AuditStamp,
    DeletionProcedure,
    RelationalOptions,
    purge_relational,
)
from forgetter.erasure.types import RelationalStatus
from forgetter.utils.exceptions import ConfigurationError

ALL_USERS = {"u1", "u2", "u3", "u4", "u5", "keep-1", "keep-2"}
TARGETS = ["u1", "u2", "u3", "u4", "u5"]


@dataclass(frozen=True)
class FailingProcedure(DeletionProcedure):
    """Runs the real procedure but raises on the nth call."""

    fail_on_call: int = 2
    calls: list = field(default_factory=list)

    async def run(self, conn: AsyncConnection) -> None:
        self.calls.append(len(self.calls) + 1)
        await super().run(conn)
        if len(self.calls) == self.fail_on_call:
            raise RuntimeError("foreign key violation")


@dataclass(frozen=True)
class CancellingProcedure(DeletionProcedure):
    """Runs the real procedure, then requests cancellation."""

    token: CancellationToken | None = None

    async def run(self, conn: AsyncConnection) -> None:
        await super().run(conn)
        self.token.cancel("SIGTERM")


class TestDeletionProcedure:
    """Tests for DeletionProcedure."""

    def test_statements_split_on_terminators(self):
        procedure = DeletionProcedure(
            sql="-- header\nDELETE FROM a;\n\nDELETE FROM b WHERE x = ';'\n;\n-- trailing comment\n"
        )
        assert procedure.statements() == [
            "-- header\nDELETE FROM a",
            "DELETE FROM b WHERE x = ';'",
        ]

    def test_from_file(self, procedure_file):
        procedure = DeletionProcedure.from_file(procedure_file)
        assert procedure.source == str(procedure_file)
        assert "ids_to_delete" in procedure.sql

    def test_from_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            DeletionProcedure.from_file(tmp_path / "missing.sql")

    def test_from_empty_file(self, tmp_path):
        path = tmp_path / "empty.sql"
        path.write_text("   \n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="empty"):
            DeletionProcedure.from_file(path)

    def test_from_undecodable_file(self, tmp_path):
        path = tmp_path / "latin1.sql"
        path.write_bytes(b"DELETE FROM users WHERE name = '\xe9';\n")
        with pytest.raises(ConfigurationError, match="Cannot read"):
            DeletionProcedure.from_file(path)


class TestRelationalOptions:
    """Tests for RelationalOptions."""

    def test_defaults(self):
        options = RelationalOptions()
        assert options.chunk_size is None
        assert options.statement_timeout_ms == 300_000
        assert options.record_audit is False

    def test_rejects_zero_chunk_size(self):
        with pytest.raises(ValueError):
            RelationalOptions(chunk_size=0)

    def test_from_settings(self, mock_settings):
        settings = mock_settings.model_copy(update={"db_chunk_size": 50, "db_record_audit": True})
        options = RelationalOptions.from_settings(settings)
        assert options.chunk_size == 50
        assert options.record_audit is True


class TestPurgeRelational:
    """Tests for purge_relational()."""

    @pytest.mark.asyncio
    async def test_single_chunk(self, test_engine, procedure, remaining_users, remaining_events):
        """Test all identifiers are purged in one transaction by default."""
        outcome = await purge_relational(test_engine, TARGETS, procedure)

        assert outcome.status == RelationalStatus.SUCCEEDED
        assert outcome.chunks_total == 1
        assert outcome.chunks_committed == 1
        assert outcome.identifiers_committed == 5
        assert outcome.staged_count == 5
        assert await remaining_users() == {"keep-1", "keep-2"}
        assert await remaining_events() == {"keep-1", "keep-2"}

    @pytest.mark.asyncio
    async def test_multiple_chunks(self, test_engine, procedure, remaining_users):
        """Test each chunk stages only its own identifiers."""
        outcome = await purge_relational(
            test_engine, TARGETS, procedure, RelationalOptions(chunk_size=2)
        )

        assert outcome.status == RelationalStatus.SUCCEEDED
        assert outcome.chunks_total == 3
        assert outcome.chunks_committed == 3
        # A staging relation leaking between chunks would inflate this count
        assert outcome.staged_count == 5
        assert await remaining_users() == {"keep-1", "keep-2"}

    @pytest.mark.asyncio
    async def test_staging_is_one_set_based_insert(self, test_engine, procedure):
        """Test each chunk is loaded with a single statement, not one insert per row."""
        inserts: list[tuple[bool, object]] = []

        def record(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith("INSERT INTO ids_to_delete"):
                inserts.append((executemany, parameters))

        event.listen(test_engine.sync_engine, "before_cursor_execute", record)
        try:
            await purge_relational(test_engine, TARGETS, procedure, RelationalOptions(chunk_size=3))
        finally:
            event.remove(test_engine.sync_engine, "before_cursor_execute", record)

        assert [executemany for executemany, _ in inserts] == [False, False]
        assert [json.loads(params[0]) for _, params in inserts] == [TARGETS[:3], TARGETS[3:]]

    @pytest.mark.asyncio
    async def test_unknown_identifiers(self, test_engine, procedure, remaining_users):
        """Test identifiers absent from the store are not an error."""
        outcome = await purge_relational(test_engine, ["u1", "ghost"], procedure)

        assert outcome.status == RelationalStatus.SUCCEEDED
        assert outcome.staged_count == 2
        assert await remaining_users() == ALL_USERS - {"u1"}

    @pytest.mark.asyncio
    async def test_dry_run_commits_nothing(self, test_engine, remaining_users, remaining_events):
        """Test a dry run stages and counts, never runs the procedure, then rolls back."""
        procedure = FailingProcedure(sql=_procedure_sql(), fail_on_call=1)

        outcome = await purge_relational(
            test_engine,
            TARGETS,
            procedure,
            RelationalOptions(chunk_size=2),
            dry_run=True,
        )

        assert outcome.status == RelationalStatus.SUCCEEDED
        assert outcome.dry_run is True
        assert outcome.staged_count == 5
        assert outcome.chunks_committed == 0
        assert outcome.identifiers_committed == 0
        assert await remaining_users() == ALL_USERS
        assert len(await remaining_events()) == len(ALL_USERS)
        assert procedure.calls == []

    @pytest.mark.asyncio
    async def test_failure_keeps_earlier_chunks(self, test_engine, remaining_users):
        """Test chunk k failing leaves chunks 1..k-1 committed and stops."""
        procedure = FailingProcedure(sql=_procedure_sql())

        with pytest.raises(RelationalError) as exc_info:
            await purge_relational(
                test_engine, TARGETS, procedure, RelationalOptions(chunk_size=2)
            )

        error = exc_info.value
        assert error.chunk_index == 2
        assert error.chunks_total == 3
        assert error.chunks_committed == 1
        assert error.identifiers_committed == 2
        assert "foreign key violation" in str(error)
        # Chunk 1 committed, chunk 2 rolled back, chunk 3 never attempted
        assert procedure.calls == [1, 2]
        assert await remaining_users() == {"u3", "u4", "u5", "keep-1", "keep-2"}

    @pytest.mark.asyncio
    async def test_cancellation_between_chunks(self, test_engine, remaining_users):
        """Test cancellation stops before the next chunk and keeps commits."""
        token = CancellationToken()
        procedure = CancellingProcedure(sql=_procedure_sql(), token=token)

        outcome = await purge_relational(
            test_engine,
            TARGETS,
            procedure,
            RelationalOptions(chunk_size=2),
            cancel_token=token,
        )

        assert outcome.status == RelationalStatus.CANCELLED
        assert outcome.chunks_committed == 1
        assert outcome.partially_applied is True
        assert "SIGTERM" in outcome.error
        assert await remaining_users() == {"u3", "u4", "u5", "keep-1", "keep-2"}

    @pytest.mark.asyncio
    async def test_audit_rows_written(self, test_engine, procedure):
        """Test one audit row per identifier, idempotent per request."""
        audit = AuditStamp(request_id="req-1", requested_by="dpo@example.com", notes="ticket 42")
        options = RelationalOptions(chunk_size=2, record_audit=True)

        await purge_relational(test_engine, TARGETS, procedure, options, audit=audit)
        # Re-running the same request must not duplicate audit rows
        await purge_relational(test_engine, TARGETS, procedure, options, audit=audit)

        async with test_engine.connect() as conn:
            rows = (
                await conn.execute(
                    text("SELECT public_id, deleted_by, notes FROM gdpr_deletion_audit WHERE request_id = 'req-1'")
                )
            ).all()

        assert sorted(row[0] for row in rows) == TARGETS
        assert {row[1] for row in rows} == {"dpo@example.com"}
        assert {row[2] for row in rows} == {"ticket 42"}

    @pytest.mark.asyncio
    async def test_no_audit_rows_in_dry_run(self, test_engine, procedure):
        audit = AuditStamp(request_id="req-2", requested_by="dpo@example.com")

        await purge_relational(
            test_engine,
            TARGETS,
            procedure,
            RelationalOptions(record_audit=True),
            dry_run=True,
            audit=audit,
        )

        async with test_engine.connect() as conn:
            count = (await conn.execute(text("SELECT count(*) FROM gdpr_deletion_audit"))).scalar_one()
        assert count == 0


class RecordingPostgresConnection:
    """Stands in for an AsyncConnection on a PostgreSQL engine, recording what it executes."""

    dialect = SimpleNamespace(name="postgresql")

    def __init__(self):
        self.executed: list[tuple[str, dict | None]] = []
        self.scripts: list[str] = []
        self.split_statements: list[str] = []
        self.transaction = SimpleNamespace(is_active=True, committed=False, rolled_back=False)
        self._staged = 0

    async def begin(self):
        transaction = self.transaction

        async def commit():
            transaction.committed = True
            transaction.is_active = False

        async def rollback():
            transaction.rolled_back = True
            transaction.is_active = False

        transaction.commit = commit
        transaction.rollback = rollback
        return transaction

    async def execute(self, statement, parameters=None):
        sql = str(statement)
        self.executed.append((sql, parameters))
        if parameters and "ids" in parameters:
            self._staged = len(parameters["ids"])
        return SimpleNamespace(scalar_one=lambda: self._staged)

    async def exec_driver_sql(self, statement):
        self.split_statements.append(statement)

    async def get_raw_connection(self):
        async def driver_execute(script):
            self.scripts.append(script)

        return SimpleNamespace(driver_connection=SimpleNamespace(execute=driver_execute))


class RecordingPostgresEngine:
    """Hands out a fresh recording connection per chunk."""

    def __init__(self):
        self.connections: list[RecordingPostgresConnection] = []

    @asynccontextmanager
    async def connect(self):
        conn = RecordingPostgresConnection()
        self.connections.append(conn)
        yield conn


class TestPurgeRelationalPostgres:
    """Tests for the statements purge_relational() issues on PostgreSQL."""

    @pytest.mark.asyncio
    async def test_chunk_statements(self):
        """Test timeout, staging DDL and a single unnest load per chunk."""
        engine = RecordingPostgresEngine()

        outcome = await purge_relational(
            engine,
            TARGETS,
            DeletionProcedure(sql=_procedure_sql()),
            RelationalOptions(chunk_size=3, statement_timeout_ms=1234),
        )

        assert outcome.status == RelationalStatus.SUCCEEDED
        assert outcome.chunks_committed == 2
        assert outcome.staged_count == 5
        assert len(engine.connections) == 2

        first = engine.connections[0]
        assert [sql for sql, _ in first.executed] == [
            "SET LOCAL statement_timeout = 1234",
            "DROP TABLE IF EXISTS pg_temp.ids_to_delete",
            "CREATE TEMP TABLE ids_to_delete (user_id text PRIMARY KEY) ON COMMIT DROP",
            "INSERT INTO ids_to_delete (user_id) SELECT unnest(CAST(:ids AS text[]))",
            "SELECT count(*) FROM ids_to_delete",
        ]
        loads = [
            params["ids"]
            for conn in engine.connections
            for sql, params in conn.executed
            if sql.startswith("INSERT INTO ids_to_delete")
        ]
        assert loads == [TARGETS[:3], TARGETS[3:]]
        assert all(conn.transaction.committed for conn in engine.connections)

    @pytest.mark.asyncio
    async def test_procedure_sent_verbatim_to_driver(self):
        """Test the whole script goes to asyncpg in one call, DO blocks intact."""
        script = (
            "DO $$ BEGIN\n"
            "  DELETE FROM users WHERE public_id IN (SELECT user_id FROM ids_to_delete);\n"
            "END $$;\n"
        )
        engine = RecordingPostgresEngine()

        await purge_relational(engine, TARGETS, DeletionProcedure(sql=script))

        conn = engine.connections[0]
        assert conn.scripts == [script]
        assert conn.split_statements == []

    @pytest.mark.asyncio
    async def test_audit_rows_after_procedure(self):
        engine = RecordingPostgresEngine()
        audit = AuditStamp(request_id="req-9", requested_by="dpo")

        await purge_relational(
            engine,
            ["u1"],
            DeletionProcedure(sql=_procedure_sql()),
            RelationalOptions(record_audit=True),
            audit=audit,
        )

        sql, params = engine.connections[0].executed[-1]
        assert sql.startswith("INSERT INTO gdpr_deletion_audit")
        assert params == {"request_id": "req-9", "deleted_by": "dpo", "notes": None}

    @pytest.mark.asyncio
    async def test_dry_run_skips_procedure_and_rolls_back(self):
        engine = RecordingPostgresEngine()

        outcome = await purge_relational(
            engine,
            TARGETS,
            DeletionProcedure(sql=_procedure_sql()),
            dry_run=True,
        )

        conn = engine.connections[0]
        assert outcome.staged_count == 5
        assert outcome.chunks_committed == 0
        assert conn.scripts == []
        assert conn.transaction.rolled_back is True
        assert conn.transaction.committed is False


def _procedure_sql() -> str:
    return (
        "DELETE FROM user_events WHERE user_id IN (SELECT user_id FROM ids_to_delete);\n"
        "DELETE FROM users WHERE public_id IN (SELECT user_id FROM ids_to_delete);\n"
    )
