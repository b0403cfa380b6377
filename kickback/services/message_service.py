"""
kickback.services.message_service — Chat line & participant persistence
========================================================================

Idempotent writes for one chat event: the sender and broadcaster
``users`` rows, and the chat line itself in ``chat_messages`` (live) or
``offline_chat_messages`` (no live session).  Every write is an
``INSERT … ON CONFLICT DO UPDATE`` so redelivered jobs converge on the
same rows.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from kickback.database.engine import upsert
from kickback.database.models import ChatMessage, OfflineChatMessage, User
from kickback.engine.analytics import analyze
from kickback.engine.events import ChatJobPayload


def upsert_user(
    session: Session, kick_user_id: int, username: str, profile_picture: str | None = None
) -> int:
    """Insert or refresh a ``users`` row; return its internal id.

    ``profile_picture_url`` is only overwritten when a new value is given.
    """
    set_: dict[str, Any] = {"username": username}
    if profile_picture:
        set_["profile_picture_url"] = profile_picture
    session.execute(
        upsert(session, User)
        .values(
            kick_user_id=kick_user_id,
            username=username,
            profile_picture_url=profile_picture,
            is_excluded=False,
        )
        .on_conflict_do_update(index_elements=["kick_user_id"], set_=set_)
    )
    return session.scalar(select(User.id).where(User.kick_user_id == kick_user_id))


def upsert_participants(session: Session, payload: ChatJobPayload) -> tuple[int, int]:
    """Upsert sender and broadcaster.  Returns their internal ids."""
    sender = payload.sender
    broadcaster = payload.broadcaster
    sender_id = upsert_user(session, sender.kick_user_id, sender.username, sender.profile_picture)
    if broadcaster.kick_user_id == sender.kick_user_id:
        return sender_id, sender_id
    broadcaster_id = upsert_user(
        session, broadcaster.kick_user_id, broadcaster.username, broadcaster.profile_picture
    )
    return sender_id, broadcaster_id


def _line_values(payload: ChatJobPayload) -> dict[str, Any]:
    """Column values shared by live and offline lines, minus the key."""
    emotes = [e.model_dump(mode="json") for e in payload.emotes] if payload.emotes else None
    badges = (
        [b.model_dump(mode="json", exclude_none=True) for b in payload.sender.badges]
        if payload.sender.badges
        else None
    )
    derived = analyze(payload.content, emotes)
    return {
        "sender_username": payload.sender.username,
        "content": payload.content,
        "emotes": emotes,
        "has_emotes": derived.has_emotes,
        "engagement_type": derived.engagement_type.value,
        "message_length": derived.message_length,
        "exclamation_count": derived.exclamation_count,
        "sentence_count": derived.sentence_count,
        "timestamp": payload.timestamp,
        "sender_username_color": payload.sender.color,
        "sender_badges": badges,
        "sender_is_verified": payload.sender.is_verified,
        "sender_is_anonymous": payload.sender.is_anonymous,
    }


def save_live_message(session: Session, payload: ChatJobPayload, stream_session_id: int) -> None:
    """Write *payload* to ``chat_messages``; coin fields are left untouched on conflict."""
    values = {**_line_values(payload), "stream_session_id": stream_session_id,
              "sent_when_offline": False}
    session.execute(
        upsert(session, ChatMessage)
        .values(
            message_id=payload.message_id,
            sender_user_id=payload.sender.kick_user_id,
            broadcaster_user_id=payload.broadcaster.kick_user_id,
            coins_earned=0,
            **values,
        )
        .on_conflict_do_update(index_elements=["message_id"], set_=values)
    )


def save_offline_message(session: Session, payload: ChatJobPayload) -> None:
    values = _line_values(payload)
    session.execute(
        upsert(session, OfflineChatMessage)
        .values(
            message_id=payload.message_id,
            sender_user_id=payload.sender.kick_user_id,
            broadcaster_user_id=payload.broadcaster.kick_user_id,
            **values,
        )
        .on_conflict_do_update(index_elements=["message_id"], set_=values)
    )


def set_coin_result(session: Session, message_id: str, coins: int, reason: str | None) -> None:
    session.execute(
        update(ChatMessage)
        .where(ChatMessage.message_id == message_id)
        .values(coins_earned=coins, coins_reason=reason)
        .execution_options(synchronize_session=False)
    )


def recent_contents(
    session: Session, sender_user_id: int, *, exclude_message_id: str, limit: int = 5
) -> list[str]:
    """The sender's last *limit* live lines (newest first), for duplicate checks."""
    return list(
        session.scalars(
            select(ChatMessage.content)
            .where(
                ChatMessage.sender_user_id == sender_user_id,
                ChatMessage.message_id != exclude_message_id,
            )
            .order_by(ChatMessage.timestamp.desc())
            .limit(limit)
        ).all()
    )
