"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of tally.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine, event  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from tally.database.engine import init_db  # noqa: E402
from tally.database.models import Base  # noqa: E402
from tally.services.ledger_service import LedgerService  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


def _install_sqlite_transactions(engine: Engine, begin: str = "BEGIN") -> None:
    """Let SQLAlchemy, not pysqlite, drive BEGIN so SAVEPOINTs work.

    Also turns on foreign-key enforcement.  ``begin="BEGIN IMMEDIATE"``
    takes the write lock up front, which serializes concurrent sessions
    the way row locks do on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql(begin)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Tally tables (no seed data).

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _install_sqlite_transactions(engine)
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine(db_engine: Engine) -> Engine:
    """The in-memory engine with default currencies and settings seeded."""
    init_db(db_engine)
    return db_engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """A file-backed SQLite engine with one connection per thread.

    Transactions start with ``BEGIN IMMEDIATE`` and wait up to 30 s for
    the lock, so concurrent ledger calls queue instead of failing.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    _install_sqlite_transactions(engine, begin="BEGIN IMMEDIATE")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(engine: Engine) -> LedgerService:
    return LedgerService(engine)


@pytest.fixture
def client(engine: Engine):
    """FastAPI TestClient wired to the seeded in-memory engine."""
    from fastapi.testclient import TestClient

    from tally.api.deps import get_engine, get_event_bus
    from tally.api.main import app
    from tally.engine.events import EventBus
    from tally.services.reward_service import register_reward_listeners

    bus = EventBus()
    register_reward_listeners(bus, LedgerService(engine), engine)
    bus.freeze()

    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_event_bus] = lambda: bus
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
