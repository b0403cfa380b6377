"""
kickback.services.session_resolver — Live / recently-ended session lookup
=========================================================================

Answers "which broadcast does this chat line belong to?".  Sessions are
written by the channel poller; this module only reads them.  Lookup
failures are logged and treated as offline, never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kickback.database.models import StreamSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResolvedSession:
    session_id: int
    is_active: bool


class SessionResolver:
    """Resolve a broadcaster + message time to a stream session.

    ``post_end_attach_seconds`` lets a line sent shortly after the stream
    ended still attach to that session (as inactive), so post-stream chat
    is attributed correctly in analytics.
    """

    def __init__(self, engine: Engine, post_end_attach_seconds: int = 120) -> None:
        self.engine = engine
        self.post_end_attach = timedelta(seconds=post_end_attach_seconds)

    def resolve(self, broadcaster_user_id: int, timestamp_ms: int) -> ResolvedSession | None:
        try:
            with Session(self.engine) as session:
                live_id = session.scalar(
                    select(StreamSession.id)
                    .where(
                        StreamSession.broadcaster_user_id == broadcaster_user_id,
                        StreamSession.ended_at.is_(None),
                    )
                    .order_by(StreamSession.started_at.desc())
                    .limit(1)
                )
                if live_id is not None:
                    return ResolvedSession(live_id, True)

                sent_at = datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)
                recent_id = session.scalar(
                    select(StreamSession.id)
                    .where(
                        StreamSession.broadcaster_user_id == broadcaster_user_id,
                        StreamSession.ended_at >= sent_at - self.post_end_attach,
                        StreamSession.ended_at <= sent_at,
                    )
                    .order_by(StreamSession.ended_at.desc())
                    .limit(1)
                )
        except SQLAlchemyError:
            logger.warning(
                "Session lookup failed for broadcaster %d, treating as offline",
                broadcaster_user_id, exc_info=True,
            )
            return None

        if recent_id is not None:
            return ResolvedSession(recent_id, False)
        return None

    def is_live(self, session_id: int) -> bool:
        """True if *session_id* exists and has not ended."""
        try:
            with Session(self.engine) as session:
                row = session.get(StreamSession, session_id)
                return row is not None and row.ended_at is None
        except SQLAlchemyError:
            logger.warning("Liveness check failed for session %d, treating as offline",
                           session_id, exc_info=True)
            return False
