"""Pytest fixtures for forgetter tests."""

from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from unittest.mock import patch

import pytest
import pytest_asyncio
import structlog
from pydantic import SecretStr
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from forgetter.config.settings import Settings
from forgetter.db.config import create_engine
from forgetter.db.models.base import Base
from forgetter.erasure.relational import DeletionProcedure

# =============================================================================
# Structlog Configuration Fixture
# =============================================================================


@pytest.fixture(scope="function", autouse=True)
def reset_structlog_after_test():
    """Reset structlog configuration after each test.

    This ensures tests that modify structlog global state
    don't affect other tests.
    """
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def procedure_file(tmp_path: Path) -> Path:
    """Deletion procedure for the test schema."""
    path = tmp_path / "gdpr-deletion.sql"
    path.write_text(TEST_PROCEDURE_SQL, encoding="utf-8")
    return path


@pytest.fixture
def mock_settings(tmp_path: Path, procedure_file: Path) -> Settings:
    """Create settings for testing."""
    return Settings(
        ENVIRONMENT="test",
        log_level="DEBUG",
        db_url=SecretStr(f"sqlite+aiosqlite:///{tmp_path / 'settings.db'}"),
        sql_path=procedure_file,
        ids_json=tmp_path / "ids.json",
        report_dir=tmp_path / "out",
        requested_by="dpo@example.com",
        amplitude_key=SecretStr("test-api-key"),
        amplitude_secret_key=SecretStr("test-secret-key"),
    )


@pytest.fixture
def patch_settings(mock_settings: Settings) -> Generator[Settings, None, None]:
    """Patch get_settings to return mock settings."""
    with (
        patch("forgetter.config.settings.get_settings", return_value=mock_settings),
        patch("forgetter.core.logging.get_settings", return_value=mock_settings),
    ):
        yield mock_settings


# =============================================================================
# Database fixtures
# =============================================================================

TEST_SCHEMA = [
    "CREATE TABLE users (id INTEGER PRIMARY KEY, public_id TEXT NOT NULL UNIQUE, email TEXT)",
    "CREATE TABLE user_events (id INTEGER PRIMARY KEY, user_id TEXT NOT NULL, kind TEXT NOT NULL)",
]

TEST_PROCEDURE_SQL = """\
-- Dependent rows first
DELETE FROM user_events
WHERE user_id IN (SELECT user_id FROM ids_to_delete);

DELETE FROM users
WHERE public_id IN (SELECT user_id FROM ids_to_delete);
"""

SEEDED_USERS = ["u1", "u2", "u3", "u4", "u5", "keep-1", "keep-2"]


@pytest_asyncio.fixture
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with a small users schema.

    A file rather than :memory: so every pooled connection sees the same data.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for statement in TEST_SCHEMA:
            await conn.execute(text(statement))
        for public_id in SEEDED_USERS:
            await conn.execute(
                text("INSERT INTO users (public_id, email) VALUES (:p, :e)"),
                {"p": public_id, "e": f"{public_id}@example.com"},
            )
            await conn.execute(
                text("INSERT INTO user_events (user_id, kind) VALUES (:p, 'login'), (:p, 'logout')"),
                {"p": public_id},
            )

    yield engine

    await engine.dispose()


@pytest.fixture
def procedure() -> DeletionProcedure:
    """Deletion procedure for the test schema."""
    return DeletionProcedure(sql=TEST_PROCEDURE_SQL, source="test")


@pytest.fixture
def remaining_users(test_engine: AsyncEngine):
    """Async callable returning the public ids still in the users table."""

    async def _remaining() -> set[str]:
        async with test_engine.connect() as conn:
            rows = await conn.execute(text("SELECT public_id FROM users"))
            return {row[0] for row in rows}

    return _remaining


@pytest.fixture
def remaining_events(test_engine: AsyncEngine):
    """Async callable returning the user ids that still have events."""

    async def _remaining() -> set[str]:
        async with test_engine.connect() as conn:
            rows = await conn.execute(text("SELECT DISTINCT user_id FROM user_events"))
            return {row[0] for row in rows}

    return _remaining
