"""
Shared pytest configuration for registrar tests.

By default every test gets its own SQLite database file (via aiosqlite), so
tests need no running server. Set TEST_DATABASE_URL to run against
PostgreSQL instead.

SAFETY: a TEST_DATABASE_URL whose database name does not contain "test" is
refused, since every test drops and recreates all tables.
"""

import os

# Must be set before the routes package is imported (disables rate limiting)
os.environ.setdefault("ENV", "test")
os.environ.setdefault("ENABLE_EMAIL", "false")

from types import SimpleNamespace  # noqa: E402
from typing import Optional  # noqa: E402

import pytest_asyncio  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from registrar.database import db  # noqa: E402
from registrar.database.db import Base  # noqa: E402
from registrar.gateway import reset_gateway, set_gateway  # noqa: E402
from registrar.gateway.fake_adapter import FakeGateway  # noqa: E402
from registrar.services import notification_dispatcher  # noqa: E402
from registrar.services.notification_dispatcher import NotificationDispatcher  # noqa: E402
from registrar.tests.factories import create_guardian, create_player, create_team  # noqa: E402


def _resolve_test_database_url() -> Optional[str]:
    """Return TEST_DATABASE_URL after the safety check, or None to use SQLite."""
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        return None
    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n"
            f"{'=' * 70}"
        )
    return url


TEST_DATABASE_URL = _resolve_test_database_url()


def _serialize_sqlite_writers(engine) -> None:
    """
    Make every SQLite transaction take the write lock up front.

    pysqlite's deferred BEGIN lets two connections both read and then both try
    to write, which SQLite resolves by failing one of them. BEGIN IMMEDIATE
    makes concurrent sessions queue on the busy timeout instead, the way row
    locks make them queue on PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path, monkeypatch):
    """Create a fresh schema for one test and point db.AsyncSessionLocal at it."""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'registrar_test.db'}"
    # No pooling: every session gets its own connection, bound to the test's loop
    engine = create_async_engine(url, echo=False, poolclass=NullPool)
    if url.startswith("sqlite"):
        _serialize_sqlite_writers(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions (the refund sync worker) uses the test engine too
    monkeypatch.setattr(db, "AsyncSessionLocal", _session_maker(engine))

    yield engine

    await engine.dispose()


def _session_maker(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def session_factory(test_engine):
    """Session factory for tests that need several independent sessions."""
    return _session_maker(test_engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """A session on the test database; rolled back and closed after the test."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()


@pytest_asyncio.fixture
async def fake_gateway():
    """Install a fresh FakeGateway as the active gateway."""
    gateway = FakeGateway()
    set_gateway(gateway)
    yield gateway
    reset_gateway()


class RecordingNotifier:
    """Notifier that records every delivery instead of sending email."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def __call__(self, template_key, recipient_email, context):
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append((template_key, recipient_email, context))
        return True


@pytest_asyncio.fixture
async def notifier(monkeypatch):
    """Replace the global notification dispatcher with one that records deliveries."""
    recorder = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier=recorder)
    monkeypatch.setattr(notification_dispatcher, "_dispatcher", dispatcher)
    recorder.dispatcher = dispatcher
    yield recorder
    dispatcher.stop()


@pytest_asyncio.fixture
async def family(db_session):
    """
    A guardian with two players and a team, committed.

    Only ids are handed out: services roll the session back, which expires
    every loaded object.
    """
    guardian = await create_guardian(db_session)
    first = await create_player(db_session, guardian, "Sam Player")
    second = await create_player(db_session, guardian, "Alex Player")
    team = await create_team(db_session, guardian)
    await db_session.commit()
    return SimpleNamespace(guardian_id=guardian.id, player_ids=[first.id, second.id], team_id=team.id)
