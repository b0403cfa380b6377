"""
kickback.services.reward_service — Exactly-once coin awards
============================================================

The only writer of ``coin_ledger`` and ``user_coin_balances``.

Guarantees:
- at most one ledger row per ``source_message_id`` (unique constraint,
  checked before and inside the transaction, and caught if a racing
  worker wins anyway);
- at most one award per user per rate-limit window, serialized by a
  ``SELECT … FOR UPDATE`` on the user's balance row;
- bounded waiting: per-transaction ``lock_timeout``/``statement_timeout``
  turn contention into retryable errors instead of hangs.

Eligibility outcomes are returned as values (see
:mod:`kickback.engine.reward`); only unexpected errors are raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kickback.config import RewardConfig
from kickback.database.engine import apply_transaction_timeouts, get_session, upsert
from kickback.database.models import (
    ChatMessage,
    CoinLedgerEntry,
    StreamSession,
    User,
    UserCoinBalance,
)
from kickback.engine.events import Badge, Emote
from kickback.engine.retry import RetryPolicy, TransientDbError
from kickback.engine.reward import (
    Awarded,
    AwardOutcome,
    NotEligible,
    RateLimited,
    Reason,
    coins_for_message,
    is_bot_username,
    is_subscriber,
    rate_limit_remaining,
)

logger = logging.getLogger(__name__)

_LEDGER_UNIQUE_MARKERS = ("uq_coin_ledger_source_message_id", "coin_ledger.source_message_id")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _is_ledger_conflict(exc: IntegrityError) -> bool:
    text = str(exc.orig)
    return any(marker in text for marker in _LEDGER_UNIQUE_MARKERS)


def count_emote_positions(emotes: Iterable[Emote | dict] | None) -> int:
    """Total occurrences across all emotes (sum of positions)."""
    total = 0
    for emote in emotes or ():
        if isinstance(emote, dict):
            total += len(emote.get("positions") or ())
        else:
            total += len(emote.positions)
    return total


# ---------------------------------------------------------------------------
# CoinAwarder
# ---------------------------------------------------------------------------
class CoinAwarder:
    """Awards coins for chat messages.

    Parameters
    ----------
    engine:
        SQLAlchemy engine (READ COMMITTED).
    config:
        Reward policy.
    retry_policy:
        Transient-error policy; defaults to one built from *config*.
    clock:
        Returns the current aware UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        engine: Engine,
        config: RewardConfig,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.engine = engine
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self.clock = clock

    # ------------------------------------------------------------------
    # Coins
    # ------------------------------------------------------------------
    def award(
        self,
        kick_user_id: int,
        stream_session_id: int | None = None,
        source_message_id: str | None = None,
        badges: Iterable[Badge | dict] | None = None,
    ) -> AwardOutcome:
        """Try to award coins for one message.

        Returns :class:`Awarded`, :class:`NotEligible` or
        :class:`RateLimited`.  Errors other than transient contention and
        ledger races propagate so the job can be retried.
        """
        with Session(self.engine) as session:
            user = session.scalar(select(User).where(User.kick_user_id == kick_user_id))
            refusal = self._check_user(user)
            if refusal is not None:
                logger.debug("No coins for kick user %d: %s", kick_user_id, refusal.reason)
                return refusal
            user_id = user.id

        if stream_session_id is None:
            return NotEligible(Reason.STREAM_OFFLINE)
        if not self._session_is_live(stream_session_id):
            return NotEligible(Reason.SESSION_ENDED)

        if source_message_id is not None:
            recorded = self._recorded_amount(source_message_id)
            if recorded is not None:
                return NotEligible(Reason.ALREADY_PROCESSED, recorded)

        subscriber = is_subscriber(badges, self.config)
        amount = coins_for_message(subscriber, self.config)

        try:
            self.retry_policy.call(self._ensure_balance, user_id)
            outcome = self.retry_policy.call(
                self._award_in_transaction,
                user_id, stream_session_id, source_message_id, amount, subscriber,
            )
        except IntegrityError as exc:
            if source_message_id is None or not _is_ledger_conflict(exc):
                raise
            logger.debug("Ledger race on message %s, already processed", source_message_id)
            return NotEligible(
                Reason.ALREADY_PROCESSED, self._recorded_amount(source_message_id) or 0
            )
        except TransientDbError as exc:
            logger.error(
                "Award for kick user %d (message %s) abandoned: %s",
                kick_user_id, source_message_id, exc,
            )
            return NotEligible(Reason.TRANSACTION_CONFLICT)

        if outcome.awarded:
            logger.info("+%d coin(s) → kick user %d%s", amount, kick_user_id,
                        " (sub)" if subscriber else "")
        return outcome

    def _check_user(self, user: User | None) -> NotEligible | None:
        if user is None:
            return NotEligible(Reason.USER_NOT_FOUND)
        if is_bot_username(user.username, self.config):
            return NotEligible(Reason.BOT_ACCOUNT)
        if user.is_excluded:
            return NotEligible(Reason.EXCLUDED)
        # Only an explicit False blocks; NULL means never linked
        if user.kick_connected is False:
            return NotEligible(Reason.NOT_CONNECTED)
        return None

    def _session_is_live(self, stream_session_id: int) -> bool:
        with Session(self.engine) as session:
            row = session.get(StreamSession, stream_session_id)
            return row is not None and row.ended_at is None

    def _recorded_amount(self, source_message_id: str) -> int | None:
        with Session(self.engine) as session:
            return session.scalar(
                select(CoinLedgerEntry.amount_earned).where(
                    CoinLedgerEntry.source_message_id == source_message_id
                )
            )

    def _ensure_balance(self, user_id: int) -> None:
        with get_session(self.engine) as session:
            session.execute(
                upsert(session, UserCoinBalance)
                .values(user_id=user_id, total_coins=0, total_emotes=0)
                .on_conflict_do_nothing(index_elements=["user_id"])
            )

    def _award_in_transaction(
        self,
        user_id: int,
        stream_session_id: int,
        source_message_id: str | None,
        amount: int,
        subscriber: bool,
    ) -> AwardOutcome:
        with Session(self.engine) as session, session.begin():
            apply_transaction_timeouts(
                session,
                lock_timeout_ms=self.config.lock_timeout_ms,
                statement_timeout_ms=self.config.statement_timeout_ms,
            )
            now = self.clock()

            # Serializes every award for this user
            balance = session.execute(
                select(UserCoinBalance.id, UserCoinBalance.last_awarded_at)
                .where(UserCoinBalance.user_id == user_id)
                .with_for_update()
            ).one()

            remaining = rate_limit_remaining(
                balance.last_awarded_at, now, self.config.rate_limit_seconds
            )
            if remaining:
                return RateLimited(remaining)

            if source_message_id is not None:
                recorded = session.scalar(
                    select(CoinLedgerEntry.amount_earned).where(
                        CoinLedgerEntry.source_message_id == source_message_id
                    )
                )
                if recorded is not None:
                    return NotEligible(Reason.ALREADY_PROCESSED, recorded)

            session.add(
                CoinLedgerEntry(
                    user_id=user_id,
                    stream_session_id=stream_session_id,
                    amount_earned=amount,
                    source_message_id=source_message_id,
                    earned_at=now,
                )
            )
            session.execute(
                update(UserCoinBalance)
                .where(UserCoinBalance.id == balance.id)
                .values(
                    total_coins=UserCoinBalance.total_coins + amount,
                    last_awarded_at=now,
                    is_subscriber=subscriber,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        return Awarded(amount)

    # ------------------------------------------------------------------
    # Emotes
    # ------------------------------------------------------------------
    def award_emotes(
        self,
        kick_user_id: int,
        emotes: Iterable[Emote | dict] | None,
        source_message_id: str | None = None,
    ) -> int:
        """Add the message's emote occurrences to ``total_emotes``.

        Not rate-limited.  With *source_message_id* the count is taken at
        most once per ``chat_messages`` row: the row's ``emotes_counted``
        flag flips in the same transaction as the increment, and a missing
        or already-flagged row counts nothing.

        Returns the number counted (0 for unknown users, already counted
        messages, or when the database stays contended past the retry
        budget).
        """
        count = count_emote_positions(emotes)
        if count == 0:
            return 0

        with Session(self.engine) as session:
            user_id = session.scalar(select(User.id).where(User.kick_user_id == kick_user_id))
        if user_id is None:
            return 0

        def _increment() -> bool:
            with get_session(self.engine) as session:
                if source_message_id is not None:
                    marked = session.execute(
                        update(ChatMessage)
                        .where(
                            ChatMessage.message_id == source_message_id,
                            ChatMessage.emotes_counted.is_(False),
                        )
                        .values(emotes_counted=True)
                        .execution_options(synchronize_session=False)
                    )
                    if marked.rowcount == 0:
                        return False
                session.execute(
                    update(UserCoinBalance)
                    .where(UserCoinBalance.user_id == user_id)
                    .values(
                        total_emotes=UserCoinBalance.total_emotes + count,
                        updated_at=self.clock(),
                    )
                    .execution_options(synchronize_session=False)
                )
                return True

        try:
            self.retry_policy.call(self._ensure_balance, user_id)
            counted = self.retry_policy.call(_increment)
        except TransientDbError as exc:
            logger.error("Emote count for kick user %d abandoned: %s", kick_user_id, exc)
            return 0
        if not counted:
            logger.debug("Emotes for message %s already counted", source_message_id)
            return 0
        logger.debug("+%d emote(s) → kick user %d", count, kick_user_id)
        return count


# ---------------------------------------------------------------------------
# Read-only queries
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BalanceSummary:
    kick_user_id: int
    username: str
    total_coins: int
    total_emotes: int
    is_subscriber: bool
    last_awarded_at: datetime | None


@dataclass(frozen=True, slots=True)
class LedgerItem:
    source_message_id: str | None
    stream_session_id: int | None
    amount_earned: int
    earned_at: datetime


def get_balance(engine: Engine, kick_user_id: int) -> BalanceSummary | None:
    """Current totals for a user; zeros if they have never been awarded."""
    with Session(engine) as session:
        row = session.execute(
            select(User, UserCoinBalance)
            .outerjoin(UserCoinBalance, UserCoinBalance.user_id == User.id)
            .where(User.kick_user_id == kick_user_id)
        ).first()
        if row is None:
            return None
        user, balance = row
        return BalanceSummary(
            kick_user_id=user.kick_user_id,
            username=user.username,
            total_coins=balance.total_coins if balance else 0,
            total_emotes=balance.total_emotes if balance else 0,
            is_subscriber=balance.is_subscriber if balance else False,
            last_awarded_at=balance.last_awarded_at if balance else None,
        )


def get_ledger(engine: Engine, kick_user_id: int, limit: int = 50) -> list[LedgerItem]:
    """Most recent ledger entries for a user, newest first."""
    with Session(engine) as session:
        rows = session.execute(
            select(
                CoinLedgerEntry.source_message_id,
                CoinLedgerEntry.stream_session_id,
                CoinLedgerEntry.amount_earned,
                CoinLedgerEntry.earned_at,
            )
            .join(User, User.id == CoinLedgerEntry.user_id)
            .where(User.kick_user_id == kick_user_id)
            .order_by(CoinLedgerEntry.earned_at.desc(), CoinLedgerEntry.id.desc())
            .limit(limit)
        ).all()
    return [LedgerItem(*row) for row in rows]


def get_award_for_message(engine: Engine, message_id: str) -> LedgerItem | None:
    with Session(engine) as session:
        row = session.execute(
            select(
                CoinLedgerEntry.source_message_id,
                CoinLedgerEntry.stream_session_id,
                CoinLedgerEntry.amount_earned,
                CoinLedgerEntry.earned_at,
            ).where(CoinLedgerEntry.source_message_id == message_id)
        ).first()
    return LedgerItem(*row) if row else None
