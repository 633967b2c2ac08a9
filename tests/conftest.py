"""
Shared pytest configuration for league engine tests.

Tests run against a throwaway SQLite database through aiosqlite unless
TEST_DATABASE_URL points somewhere else (e.g. a PostgreSQL test database).

SAFETY: This module REFUSES to run against any database whose name does not
contain the substring "test". This prevents accidental drops of the
development or production database when environment variables are
misconfigured.
"""

import os
import tempfile

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from league_engine.database.db import Base
from league_engine.database.models import LeagueFormat
from league_engine.models.schemas import Actor, ActorRole
from league_engine.services import league_service, stats_queue


def _resolve_test_database_url() -> str:
    """Build the test database URL with safety checks.

    Raises ``RuntimeError`` if the resolved URL does not point to a database
    whose name contains "test".
    """
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        path = os.path.join(tempfile.gettempdir(), "league_engine_test.db")
        url = f"sqlite+aiosqlite:///{path}"

    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n\n"
            f"  Resolved URL: {url}\n"
            f"{'=' * 70}"
        )
    return url


TEST_DATABASE_URL = _resolve_test_database_url()


def _configure_sqlite(engine) -> None:
    """Let SQLAlchemy own transactions so SAVEPOINTs behave, and enforce foreign keys."""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a fresh schema for each test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
    if TEST_DATABASE_URL.startswith("sqlite"):
        _configure_sqlite(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions (the standings queue) must hit the test database
    from league_engine.database import db

    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    yield engine

    db.AsyncSessionLocal = original_async_session_local
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine):
    """Session bound to the per-test database."""
    async_session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest.fixture(autouse=True)
def recalc_requests(monkeypatch):
    """
    Record standings recalculation requests instead of starting queue jobs.

    Tests that exercise the queue itself use StandingsRecalcQueue directly.
    """
    requested = []

    async def fake_request_recalculation(session, league_id):
        requested.append(league_id)
        return None

    monkeypatch.setattr(stats_queue, "request_recalculation", fake_request_recalculation)
    return requested


# ============================================================================
# Actors and league builders
# ============================================================================


@pytest.fixture
def organizer():
    return Actor(id="org-1", display_name="Olive Organizer", role=ActorRole.ORGANIZER)


@pytest.fixture
def make_league(db_session, organizer):
    """Factory for leagues created through the league service."""

    async def _make(format=LeagueFormat.ROUND_ROBIN, name="Test League", **settings):
        return await league_service.create_league(db_session, organizer, name, format, **settings)

    return _make


@pytest.fixture
def add_members(db_session, organizer):
    """
    Factory adding singles members ``p1..pN`` (rating descending with index)
    or doubles teams when ``team_size=2``.
    """

    async def _add(league, count, team_size=1, start=1):
        members = []
        for i in range(start, start + count):
            if team_size == 2:
                player_ids = [f"p{i}a", f"p{i}b"]
                name = f"Team {i}"
            else:
                player_ids = [f"p{i}"]
                name = f"Player {i}"
            members.append(
                await league_service.add_member(
                    db_session, league.id, organizer, name, player_ids, rating=float(100 - i)
                )
            )
        return members

    return _add
