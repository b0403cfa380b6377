"""
kickback.services.job_store — Durable chat-job queue on PostgreSQL
===================================================================

One table (``chat_jobs``), one logical queue, at-least-once delivery.

Lifecycle::

    enqueue ─► pending ─claim─► processing ─complete─► completed
                  ▲                 │
                  └──── fail (attempts < max) / stale-lock reset
                                    │
                                    └─ fail (attempts ≥ max) ─► failed

Claims use ``SELECT … FOR UPDATE SKIP LOCKED`` so concurrent workers never
receive the same row.  A job whose worker died stays ``processing`` until
its lock goes stale; the next claim resets it to ``pending``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Engine, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kickback.constants import MAX_ERROR_LENGTH
from kickback.database.engine import apply_transaction_timeouts, get_session, upsert
from kickback.database.models import ChatJob, JobStatus
from kickback.engine.events import ChatJobPayload, InvalidPayloadError, parse_payload
from kickback.engine.retry import RetryPolicy, TransientDbError
from kickback.services.log_throttle import ThrottledLogger

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class ClaimedJob:
    """Detached snapshot of a claimed row, safe to hand to another thread."""

    id: int
    message_id: str
    payload: dict[str, Any]
    sender_user_id: int
    broadcaster_user_id: int
    stream_session_id: int | None
    attempts: int


@dataclass(frozen=True, slots=True)
class QueueStats:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    stale_locks: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class ChatJobStore:
    """All reads and writes against ``chat_jobs``.

    Parameters
    ----------
    engine:
        SQLAlchemy engine.
    retry_policy:
        Shared transient-error policy (defaults to 3 attempts).
    clock:
        Returns the current aware UTC datetime; injectable for tests.
    max_attempts:
        Default delivery budget used by :meth:`fail`.
    lock_timeout_ms, statement_timeout_ms:
        Per-transaction bounds applied to every write (PostgreSQL only).
    """

    def __init__(
        self,
        engine: Engine,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
        max_attempts: int = 5,
        lock_timeout_ms: int = 10_000,
        statement_timeout_ms: int = 30_000,
    ) -> None:
        self.engine = engine
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.max_attempts = max_attempts
        self.lock_timeout_ms = lock_timeout_ms
        self.statement_timeout_ms = statement_timeout_ms
        self._throttled = ThrottledLogger(logger)

    def _bound(self, session: Session) -> None:
        apply_transaction_timeouts(
            session,
            lock_timeout_ms=self.lock_timeout_ms,
            statement_timeout_ms=self.statement_timeout_ms,
        )

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def enqueue(
        self, payload: ChatJobPayload | dict[str, Any], external_id: str | None = None
    ) -> int:
        """Insert or refresh the job for one chat event; return its id.

        Redelivery of the same ``message_id`` overwrites the payload and
        puts the job back to ``pending``.

        Raises
        ------
        InvalidPayloadError
            If the payload fails validation or *external_id* does not
            match its ``message_id``.  Nothing is written.
        """
        event = parse_payload(payload)
        if external_id is not None and external_id != event.message_id:
            raise InvalidPayloadError(
                f"external id {external_id!r} does not match message_id {event.message_id!r}"
            )
        job_id = self.retry_policy.call(self._upsert_job, event)
        logger.debug("Enqueued job %d for message %s", job_id, event.message_id)
        return job_id

    def _upsert_job(self, event: ChatJobPayload) -> int:
        now = self.clock()
        values = {
            "payload": event.to_json(),
            "sender_user_id": event.sender.kick_user_id,
            "broadcaster_user_id": event.broadcaster.kick_user_id,
            "stream_session_id": event.stream_session_id,
            "status": JobStatus.PENDING,
        }
        with get_session(self.engine) as session:
            self._bound(session)
            stmt = upsert(session, ChatJob).values(message_id=event.message_id, **values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["message_id"],
                set_={**values, "locked_at": None, "updated_at": now},
            )
            session.execute(stmt)
            return session.scalar(
                select(ChatJob.id).where(ChatJob.message_id == event.message_id)
            )

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    def claim_batch(self, n: int, stale_lock_timeout: float = 300) -> list[ClaimedJob]:
        """Claim up to *n* pending jobs, oldest first.

        Returns an empty list (and logs, throttled) when the database keeps
        failing transiently past the retry budget.
        """
        if n <= 0:
            return []
        try:
            jobs = self.retry_policy.call(self._claim, n, stale_lock_timeout)
        except TransientDbError as exc:
            self._throttled.error("Failed to claim chat jobs", exc=exc)
            return []
        if jobs:
            logger.debug("Claimed %d job(s)", len(jobs))
        return jobs

    def _claim(self, n: int, stale_lock_timeout: float) -> list[ClaimedJob]:
        now = self.clock()
        stale_before = now - timedelta(seconds=stale_lock_timeout)
        with get_session(self.engine) as session:
            self._bound(session)
            # 1. Recover jobs whose worker vanished
            reset = session.execute(
                update(ChatJob)
                .where(
                    ChatJob.status == JobStatus.PROCESSING,
                    ChatJob.locked_at < stale_before,
                )
                .values(status=JobStatus.PENDING, locked_at=None)
                .execution_options(synchronize_session=False)
            )
            if reset.rowcount:
                logger.warning("Reset %d stale chat job lock(s)", reset.rowcount)

            # 2. Lock the oldest pending rows nobody else holds
            ids = session.scalars(
                select(ChatJob.id)
                .where(ChatJob.status == JobStatus.PENDING)
                .order_by(ChatJob.created_at, ChatJob.id)
                .limit(n)
                .with_for_update(skip_locked=True)
            ).all()
            if not ids:
                return []

            # 3. Mark them ours
            session.execute(
                update(ChatJob)
                .where(ChatJob.id.in_(ids))
                .values(
                    status=JobStatus.PROCESSING,
                    locked_at=now,
                    attempts=ChatJob.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            rows = session.execute(
                select(
                    ChatJob.id,
                    ChatJob.message_id,
                    ChatJob.payload,
                    ChatJob.sender_user_id,
                    ChatJob.broadcaster_user_id,
                    ChatJob.stream_session_id,
                    ChatJob.attempts,
                )
                .where(ChatJob.id.in_(ids))
                .order_by(ChatJob.created_at, ChatJob.id)
            ).all()
            return [ClaimedJob(*row) for row in rows]

    def complete(self, job_id: int) -> bool:
        """Mark *job_id* completed.  Returns False if the update failed."""
        return self._finish(
            job_id,
            "complete",
            status=JobStatus.COMPLETED,
            processed_at=self.clock(),
            locked_at=None,
        )

    def fail(
        self,
        job_id: int,
        error: str,
        attempts: int,
        max_attempts: int | None = None,
    ) -> bool:
        """Record a failed delivery.

        Back to ``pending`` while ``attempts < max_attempts``, otherwise
        ``failed`` for good.  ``last_error`` keeps the first 1000
        characters of *error*.
        """
        limit = self.max_attempts if max_attempts is None else max_attempts
        retry = attempts < limit
        if not retry:
            logger.error("Job %d failed permanently after %d attempt(s): %s",
                         job_id, attempts, error[:200])
        return self._finish(
            job_id,
            "fail",
            status=JobStatus.PENDING if retry else JobStatus.FAILED,
            locked_at=None,
            last_error=error[:MAX_ERROR_LENGTH],
            processed_at=None if retry else self.clock(),
        )

    def quarantine(self, job_id: int, error: str) -> bool:
        """Fail *job_id* immediately; its stored payload can never succeed."""
        logger.warning("Quarantining job %d: %s", job_id, error[:200])
        return self._finish(
            job_id,
            "quarantine",
            status=JobStatus.FAILED,
            locked_at=None,
            last_error=error[:MAX_ERROR_LENGTH],
            processed_at=self.clock(),
        )

    def _finish(self, job_id: int, action: str, **values: Any) -> bool:
        def _update() -> None:
            with get_session(self.engine) as session:
                self._bound(session)
                session.execute(
                    update(ChatJob)
                    .where(ChatJob.id == job_id)
                    .values(updated_at=self.clock(), **values)
                    .execution_options(synchronize_session=False)
                )

        try:
            self.retry_policy.call(_update)
        except (SQLAlchemyError, TransientDbError) as exc:
            # Left processing; stale-lock recovery hands it out again
            self._throttled.error("Failed to %s chat job %d", action, job_id, exc=exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------
    def stats(self, stale_lock_timeout: float = 300) -> QueueStats:
        """Per-status counts plus ``processing`` rows with a stale lock."""
        stale_before = self.clock() - timedelta(seconds=stale_lock_timeout)
        with get_session(self.engine) as session:
            counts = dict(
                session.execute(
                    select(ChatJob.status, func.count()).group_by(ChatJob.status)
                ).all()
            )
            stale = session.scalar(
                select(func.count())
                .select_from(ChatJob)
                .where(
                    ChatJob.status == JobStatus.PROCESSING,
                    ChatJob.locked_at < stale_before,
                )
            )
        return QueueStats(
            pending=counts.get(JobStatus.PENDING, 0),
            processing=counts.get(JobStatus.PROCESSING, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            failed=counts.get(JobStatus.FAILED, 0),
            stale_locks=stale or 0,
        )
