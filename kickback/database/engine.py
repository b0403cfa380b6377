"""
kickback.database.engine — Database Connection & Async Helper
==============================================================

The worker runs an ``asyncio`` loop, but SQLAlchemy + psycopg2 is
**synchronous**.  Every database call from the loop goes through
:func:`run_db`, which ships the synchronous function to a thread pool so
the loop stays free to poll, dispatch, and handle signals.

Usage::

    from kickback.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    # Inside a coroutine:
    jobs = await run_db(store.claim_batch, 10, 300, executor=pool)
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from collections.abc import Callable
from concurrent.futures import Executor
from contextlib import contextmanager
from typing import Any, TypeVar

from sqlalchemy import Engine, create_engine, literal, select
from sqlalchemy import func as sa_func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from kickback.database.models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None, *, pool_size: int = 5) -> Engine:
    """Build a SQLAlchemy :class:`Engine`, by default from ``DATABASE_URL``.

    * ``pool_size`` — persistent connections; the worker passes its
      concurrency plus headroom for the poll loop and the advisory lock.
    * ``max_overflow=10`` — extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available
      (surfaces as a retryable pool-exhaustion error).
    * ``isolation_level="READ COMMITTED"`` — per-user serialization comes
      from row locks, not the isolation level.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=pool_size,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
        isolation_level="READ COMMITTED",
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`kickback.database.models`.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is kept for dev/test databases.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Usage::

        with get_session(engine) as session:
            session.execute(update(ChatJob)...)
            # commit happens automatically on block exit
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def is_postgres(bind: Engine | Session) -> bool:
    """True when *bind* talks to PostgreSQL."""
    engine = bind.get_bind() if isinstance(bind, Session) else bind
    return engine.dialect.name == "postgresql"


def upsert(bind: Engine | Session, model: type[Base]) -> Any:
    """Return a dialect ``insert()`` supporting ``on_conflict_do_*``.

    PostgreSQL and SQLite share the ``ON CONFLICT`` syntax, so callers
    write one statement for both.
    """
    if is_postgres(bind):
        return postgresql.insert(model)
    return sqlite.insert(model)


def apply_transaction_timeouts(
    session: Session, *, lock_timeout_ms: int, statement_timeout_ms: int
) -> None:
    """Bound lock waits and statement time for the current transaction.

    Uses ``set_config(..., is_local => true)`` so the settings vanish at
    COMMIT/ROLLBACK.  No-op on other databases.
    """
    if not is_postgres(session):
        return
    session.execute(
        select(
            _set_local("lock_timeout", f"{lock_timeout_ms}ms"),
            _set_local("statement_timeout", f"{statement_timeout_ms}ms"),
        )
    )


def _set_local(name: str, value: str):
    return sa_func.set_config(literal(name), literal(value), literal(True))


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(
    func: Callable[..., T], *args: Any, executor: Executor | None = None
) -> T:
    """Run a **synchronous** database function on a background thread.

    Every DB call made from a coroutine should go through this wrapper::

        result = await run_db(my_sync_db_function, engine, user_id)

    With no *executor* it uses :func:`asyncio.to_thread` (the loop's
    default pool).  The worker passes its own bounded executor so that
    in-flight jobs cannot exceed the configured concurrency.
    """
    if executor is None:
        return await asyncio.to_thread(func, *args)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, functools.partial(func, *args))
