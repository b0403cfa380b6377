"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from kickback.database.engine import init_db
from kickback.database.models import StreamSession, User
from kickback.engine.retry import RetryPolicy

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

T0 = datetime(2026, 3, 1, 20, 0, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Kickback tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by the worker's thread pool).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_sleep_retry() -> RetryPolicy:
    """Default retry bounds without real sleeping."""
    return RetryPolicy(sleep=lambda _s: None)


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------
def seed_user(engine: Engine, kick_user_id: int, username: str, **fields: Any) -> int:
    """Insert a User row and return its internal id."""
    with Session(engine) as session:
        user = User(kick_user_id=kick_user_id, username=username, **fields)
        session.add(user)
        session.commit()
        return user.id


def seed_session(
    engine: Engine,
    broadcaster_user_id: int,
    started_at: datetime = T0 - timedelta(hours=1),
    ended_at: datetime | None = None,
) -> int:
    """Insert a StreamSession row and return its id (live unless *ended_at*)."""
    with Session(engine) as session:
        row = StreamSession(
            broadcaster_user_id=broadcaster_user_id,
            channel_slug=f"channel-{broadcaster_user_id}",
            started_at=started_at,
            ended_at=ended_at,
        )
        session.add(row)
        session.commit()
        return row.id


def make_payload(
    message_id: str = "m1",
    *,
    content: str = "hello chat, how is everyone",
    sender_id: int = 1001,
    sender_name: str = "viewer_one",
    broadcaster_id: int = 42,
    broadcaster_name: str = "streamer",
    timestamp: datetime = T0,
    badges: list[dict] | None = None,
    emotes: list[dict] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build a raw chat-job payload dict as ingestion would enqueue it."""
    payload: dict[str, Any] = {
        "message_id": message_id,
        "content": content,
        "timestamp": int(timestamp.timestamp() * 1000),
        "sender": {
            "kick_user_id": sender_id,
            "username": sender_name,
            "badges": badges,
            "is_verified": False,
            "is_anonymous": False,
        },
        "broadcaster": {"kick_user_id": broadcaster_id, "username": broadcaster_name},
    }
    if emotes is not None:
        payload["emotes"] = emotes
    payload.update(extra)
    return payload


# ---------------------------------------------------------------------------
# Optional PostgreSQL engine
# ---------------------------------------------------------------------------
@pytest.fixture
def pg_engine():
    """Engine on a scratch PostgreSQL database, or skip.

    Set ``KICKBACK_TEST_DATABASE_URL`` to a disposable database; its
    ``chat_jobs`` table is emptied before and after each test.
    """
    import os

    from sqlalchemy import delete

    from kickback.database.engine import create_db_engine
    from kickback.database.models import ChatJob

    url = os.getenv("KICKBACK_TEST_DATABASE_URL", "")
    if not url.startswith("postgresql"):
        pytest.skip("KICKBACK_TEST_DATABASE_URL is not a PostgreSQL URL")

    engine = create_db_engine(url, pool_size=8)
    init_db(engine)
    with Session(engine) as session:
        session.execute(delete(ChatJob))
        session.commit()
    yield engine
    with Session(engine) as session:
        session.execute(delete(ChatJob))
        session.commit()
    engine.dispose()
