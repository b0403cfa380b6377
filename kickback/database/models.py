"""
kickback.database.models — SQLAlchemy 2.0 Data Models
======================================================

Tables:
- users                  — Chat participants keyed by Kick user id
- stream_sessions        — Broadcast windows (written elsewhere, read here)
- chat_jobs              — Durable queue of inbound chat events
- coin_ledger            — Append-only award journal, one row per message
- user_coin_balances     — Running totals + last-award timestamp per user
- chat_messages          — Messages sent while a session was live
- offline_chat_messages  — Messages sent with no live session
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Kickback ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class JobStatus(enum.StrEnum):
    """Lifecycle of a chat job.

    pending → processing → completed
                        ↘ pending (retry) … → failed
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Users — one row per Kick account seen in chat
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    kick_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    profile_picture_url: Mapped[str | None] = mapped_column(Text, default=None)
    # NULL means "never linked"; only an explicit False blocks awards
    kick_connected: Mapped[bool | None] = mapped_column(Boolean, nullable=True, default=None)
    is_excluded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} kick={self.kick_user_id} name={self.username!r}>"


# ---------------------------------------------------------------------------
# StreamSession — owned by the channel poller, consumed read-only
# ---------------------------------------------------------------------------
class StreamSession(Base):
    """One broadcast.  ``ended_at IS NULL`` means the stream is live."""
    __tablename__ = "stream_sessions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    broadcaster_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    channel_slug: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    __table_args__ = (
        Index("ix_stream_sessions_broadcaster_ended", "broadcaster_user_id", "ended_at"),
    )

    def __repr__(self) -> str:
        return f"<StreamSession id={self.id} broadcaster={self.broadcaster_user_id} live={self.ended_at is None}>"


# ---------------------------------------------------------------------------
# ChatJob — the durable queue
# ---------------------------------------------------------------------------
class ChatJob(Base):
    """One inbound chat event awaiting persistence and reward.

    ``message_id`` is the enqueue idempotency key: redelivery of the same
    event updates this row instead of adding another.
    """
    __tablename__ = "chat_jobs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    sender_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    broadcaster_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    stream_session_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="chat_job_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("message_id", name="uq_chat_jobs_message_id"),
        # FIFO claim scan
        Index("ix_chat_jobs_status_created", "status", "created_at"),
        Index("ix_chat_jobs_status_locked", "status", "locked_at"),
    )

    def __repr__(self) -> str:
        return f"<ChatJob id={self.id} msg={self.message_id!r} status={self.status} attempts={self.attempts}>"


# ---------------------------------------------------------------------------
# CoinLedgerEntry — append-only proof that a message was paid
# ---------------------------------------------------------------------------
class CoinLedgerEntry(Base):
    __tablename__ = "coin_ledger"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    stream_session_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("stream_sessions.id", ondelete="SET NULL"), nullable=True
    )
    amount_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    earned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        # Exactly-once award guarantee
        UniqueConstraint("source_message_id", name="uq_coin_ledger_source_message_id"),
        Index("ix_coin_ledger_user_time", "user_id", "earned_at"),
        Index("ix_coin_ledger_session", "stream_session_id"),
    )

    def __repr__(self) -> str:
        return f"<CoinLedgerEntry id={self.id} user={self.user_id} +{self.amount_earned} msg={self.source_message_id!r}>"


# ---------------------------------------------------------------------------
# UserCoinBalance — one aggregate row per user
# ---------------------------------------------------------------------------
class UserCoinBalance(Base):
    """Running totals; the row lock on it serializes awards per user."""
    __tablename__ = "user_coin_balances"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    total_coins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_emotes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_awarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    is_subscriber: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_user_coin_balances_total_desc", "total_coins"),
    )

    def __repr__(self) -> str:
        return f"<UserCoinBalance user={self.user_id} coins={self.total_coins} emotes={self.total_emotes}>"


# ---------------------------------------------------------------------------
# Persisted chat lines
# ---------------------------------------------------------------------------
class _ChatLineMixin:
    """Columns shared by live and offline chat lines."""

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    sender_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sender_username: Mapped[str] = mapped_column(String(100), nullable=False)
    broadcaster_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    emotes: Mapped[list | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    has_emotes: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    engagement_type: Mapped[str] = mapped_column(String(32), nullable=False, default="regular")
    message_length: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exclamation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sentence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)  # epoch ms
    sender_username_color: Mapped[str | None] = mapped_column(String(32), default=None)
    sender_badges: Mapped[list | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
    sender_is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sender_is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class ChatMessage(_ChatLineMixin, Base):
    __tablename__ = "chat_messages"

    stream_session_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("stream_sessions.id", ondelete="SET NULL"), nullable=True
    )
    coins_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    coins_reason: Mapped[str | None] = mapped_column(String(200), default=None)
    sent_when_offline: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Set with the total_emotes increment so redelivery counts once
    emotes_counted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_chat_messages_session_ts", "stream_session_id", "timestamp"),
        Index("ix_chat_messages_sender_ts", "sender_user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<ChatMessage msg={self.message_id!r} session={self.stream_session_id} coins={self.coins_earned}>"


class OfflineChatMessage(_ChatLineMixin, Base):
    __tablename__ = "offline_chat_messages"

    __table_args__ = (
        Index("ix_offline_chat_messages_broadcaster_ts", "broadcaster_user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<OfflineChatMessage msg={self.message_id!r} sender={self.sender_user_id}>"
