"""
kickback.engine.events — ChatJobPayload and friends
====================================================

The envelope every chat event is normalized into before it is enqueued.
Validation happens at the enqueue boundary so that a malformed event is
rejected there instead of failing deep inside the award path.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

__all__ = [
    "Badge",
    "ChatBroadcaster",
    "ChatJobPayload",
    "ChatSender",
    "Emote",
    "EmotePosition",
    "InvalidPayloadError",
    "parse_payload",
]


class InvalidPayloadError(ValueError):
    """Raised when a chat payload does not match :class:`ChatJobPayload`."""


class _PayloadModel(BaseModel):
    # Unknown keys from newer ingestion versions are kept, not rejected
    model_config = ConfigDict(extra="allow", frozen=True)


class Badge(_PayloadModel):
    text: str | None = None
    type: str | None = None
    count: int | None = None


class EmotePosition(_PayloadModel):
    s: int
    e: int


class Emote(_PayloadModel):
    emote_id: str
    positions: list[EmotePosition] = Field(default_factory=list)


class ChatSender(_PayloadModel):
    kick_user_id: int
    username: str = Field(min_length=1)
    profile_picture: str | None = None
    color: str | None = None
    badges: list[Badge] | None = None
    is_verified: bool = False
    is_anonymous: bool = False


class ChatBroadcaster(_PayloadModel):
    kick_user_id: int
    username: str = Field(min_length=1)
    profile_picture: str | None = None


class ChatJobPayload(_PayloadModel):
    """One chat line as delivered by ingestion.

    ``timestamp`` is epoch milliseconds.  ``stream_session_id`` and
    ``is_stream_active`` are set when ingestion already resolved the
    session; otherwise the worker resolves it from the timestamp.
    """

    message_id: str = Field(min_length=1, max_length=128)
    content: str = ""
    timestamp: int
    sender: ChatSender
    broadcaster: ChatBroadcaster
    emotes: list[Emote] | None = None
    stream_session_id: int | None = None
    is_stream_active: bool | None = None

    def to_json(self) -> dict[str, Any]:
        """JSON-safe dict for the ``chat_jobs.payload`` column."""
        return self.model_dump(mode="json", exclude_none=True)


def parse_payload(raw: ChatJobPayload | dict[str, Any]) -> ChatJobPayload:
    """Validate *raw* into a :class:`ChatJobPayload`.

    Raises
    ------
    InvalidPayloadError
        With pydantic's error summary when validation fails.
    """
    if isinstance(raw, ChatJobPayload):
        return raw
    if not isinstance(raw, dict):
        raise InvalidPayloadError(f"payload must be an object, got {type(raw).__name__}")
    try:
        return ChatJobPayload.model_validate(raw)
    except ValidationError as exc:
        raise InvalidPayloadError(str(exc)) from exc
