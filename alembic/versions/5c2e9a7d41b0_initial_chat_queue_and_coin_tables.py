"""Initial chat queue, coin ledger and chat message tables

Revision ID: 5c2e9a7d41b0
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5c2e9a7d41b0"
down_revision = None
branch_labels = None
depends_on = None

CHAT_JOB_STATUS = ("pending", "processing", "completed", "failed")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def _chat_line_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column("message_id", sa.String(128), nullable=False, unique=True),
        sa.Column("sender_user_id", sa.BigInteger(), nullable=False),
        sa.Column("sender_username", sa.String(100), nullable=False),
        sa.Column("broadcaster_user_id", sa.BigInteger(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("emotes", postgresql.JSONB(), nullable=True),
        sa.Column("has_emotes", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("engagement_type", sa.String(32), nullable=False, server_default="regular"),
        sa.Column("message_length", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("exclamation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sentence_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("sender_username_color", sa.String(32), nullable=True),
        sa.Column("sender_badges", postgresql.JSONB(), nullable=True),
        sa.Column("sender_is_verified", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("sender_is_anonymous", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column("kick_user_id", sa.BigInteger(), nullable=False, unique=True),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("profile_picture_url", sa.Text(), nullable=True),
        sa.Column("kick_connected", sa.Boolean(), nullable=True),
        sa.Column("is_excluded", sa.Boolean(), nullable=False, server_default="false"),
        *_timestamps(),
    )

    op.create_table(
        "stream_sessions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column("broadcaster_user_id", sa.BigInteger(), nullable=False),
        sa.Column("channel_slug", sa.String(100), nullable=False, server_default=""),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_stream_sessions_broadcaster_ended", "stream_sessions",
        ["broadcaster_user_id", "ended_at"],
    )

    op.create_table(
        "chat_jobs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column("message_id", sa.String(128), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("sender_user_id", sa.BigInteger(), nullable=False),
        sa.Column("broadcaster_user_id", sa.BigInteger(), nullable=False),
        sa.Column("stream_session_id", sa.BigInteger(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*CHAT_JOB_STATUS, name="chat_job_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("message_id", name="uq_chat_jobs_message_id"),
    )
    op.create_index("ix_chat_jobs_status_created", "chat_jobs", ["status", "created_at"])
    op.create_index("ix_chat_jobs_status_locked", "chat_jobs", ["status", "locked_at"])

    op.create_table(
        "coin_ledger",
        sa.Column("id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column(
            "user_id", sa.BigInteger(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "stream_session_id", sa.BigInteger(),
            sa.ForeignKey("stream_sessions.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("amount_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("source_message_id", sa.String(128), nullable=True),
        sa.Column("earned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("source_message_id", name="uq_coin_ledger_source_message_id"),
    )
    op.create_index("ix_coin_ledger_user_time", "coin_ledger", ["user_id", "earned_at"])
    op.create_index("ix_coin_ledger_session", "coin_ledger", ["stream_session_id"])

    op.create_table(
        "user_coin_balances",
        sa.Column("id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column(
            "user_id", sa.BigInteger(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True,
        ),
        sa.Column("total_coins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_emotes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_awarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_subscriber", sa.Boolean(), nullable=False, server_default="false"),
        *_timestamps(),
    )
    op.create_index(
        "ix_user_coin_balances_total_desc", "user_coin_balances", ["total_coins"]
    )

    op.create_table(
        "chat_messages",
        *_chat_line_columns(),
        sa.Column(
            "stream_session_id", sa.BigInteger(),
            sa.ForeignKey("stream_sessions.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("coins_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("coins_reason", sa.String(200), nullable=True),
        sa.Column("sent_when_offline", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("emotes_counted", sa.Boolean(), nullable=False, server_default="false"),
    )
    op.create_index(
        "ix_chat_messages_session_ts", "chat_messages", ["stream_session_id", "timestamp"]
    )
    op.create_index(
        "ix_chat_messages_sender_ts", "chat_messages", ["sender_user_id", "timestamp"]
    )

    op.create_table("offline_chat_messages", *_chat_line_columns())
    op.create_index(
        "ix_offline_chat_messages_broadcaster_ts", "offline_chat_messages",
        ["broadcaster_user_id", "timestamp"],
    )


def downgrade() -> None:
    op.drop_table("offline_chat_messages")
    op.drop_table("chat_messages")
    op.drop_table("user_coin_balances")
    op.drop_table("coin_ledger")
    op.drop_table("chat_jobs")
    op.execute("DROP TYPE IF EXISTS chat_job_status")
    op.drop_table("stream_sessions")
    op.drop_table("users")
