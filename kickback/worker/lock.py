"""
kickback.worker.lock — Process-wide singleton via PostgreSQL advisory lock
===========================================================================

Only one chat worker may consume the queue at a time.  The lock is a
session-level ``pg_try_advisory_lock`` held on a dedicated connection that
stays checked out for the life of the process; closing the connection (or
the process dying) releases it.
"""

from __future__ import annotations

import logging

from sqlalchemy import Connection, Engine, func, select
from sqlalchemy.exc import SQLAlchemyError

from kickback.constants import CHAT_WORKER_LOCK_ID
from kickback.database.engine import is_postgres

logger = logging.getLogger(__name__)


class SingletonLock:
    """Non-blocking advisory lock.

    On databases other than PostgreSQL there is nothing to lock against;
    :meth:`acquire` logs that and succeeds.
    """

    def __init__(self, engine: Engine, lock_id: int = CHAT_WORKER_LOCK_ID) -> None:
        self.engine = engine
        self.lock_id = lock_id
        self._conn: Connection | None = None
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> bool:
        """Try once.  True if this process now owns the lock."""
        if self._held:
            return True
        if not is_postgres(self.engine):
            logger.info("Advisory lock skipped (%s database)", self.engine.dialect.name)
            self._held = True
            return True

        conn = self.engine.connect()
        try:
            got = conn.scalar(select(func.pg_try_advisory_lock(self.lock_id)))
            # Session-level lock; ending the implicit transaction keeps it
            conn.commit()
        except SQLAlchemyError:
            conn.close()
            raise
        if not got:
            conn.close()
            logger.info("Advisory lock %d is held by another worker", self.lock_id)
            return False

        self._conn = conn
        self._held = True
        logger.info("Advisory lock %d acquired", self.lock_id)
        return True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.scalar(select(func.pg_advisory_unlock(self.lock_id)))
            conn.commit()
            logger.info("Advisory lock %d released", self.lock_id)
        except SQLAlchemyError:
            # Closing the connection drops the lock server-side anyway
            logger.warning("Advisory unlock failed; closing connection", exc_info=True)
        finally:
            conn.close()

    def __enter__(self) -> SingletonLock:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
