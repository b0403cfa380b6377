"""
kickback.engine.analytics — Chat line classification
=====================================================

Derived fields stored alongside each persisted chat line.  Used by
message persistence only; the award path never looks at them.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any

_EMOTE_TOKEN = re.compile(r"\[emote:(\d+):([^\]]+)\]")
_SENTENCE_END = re.compile(r"[.!?]+")
_QUESTION_WORDS = ("what", "why", "how", "when", "where", "who")


class EngagementType(enum.StrEnum):
    COMMAND = "command"
    QUESTION = "question"
    REACTION = "reaction"
    SHORT_MESSAGE = "short_message"
    ENTHUSIASTIC = "enthusiastic"
    CONVERSATION = "conversation"
    DISCUSSION = "discussion"
    EMOTE_RESPONSE = "emote_response"
    REGULAR = "regular"


@dataclass(frozen=True, slots=True)
class MessageAnalytics:
    has_emotes: bool
    engagement_type: EngagementType
    message_length: int
    exclamation_count: int
    sentence_count: int


def count_exclamations(content: str) -> int:
    return (content or "").count("!")


def count_sentences(content: str) -> int:
    return len(_SENTENCE_END.findall(content or ""))


def message_length(content: str) -> int:
    return len(content or "")


def extract_emotes_from_content(content: str) -> list[dict[str, Any]]:
    """Find inline ``[emote:<id>:<name>]`` tokens.

    Returns the stored emote shape, one entry per emote id, with inclusive
    start/end offsets for each occurrence.
    """
    positions: dict[str, list[dict[str, int]]] = {}
    for match in _EMOTE_TOKEN.finditer(content or ""):
        positions.setdefault(match.group(1), []).append(
            {"s": match.start(), "e": match.end() - 1}
        )
    return [{"emote_id": eid, "positions": pos} for eid, pos in positions.items()]


def has_emotes(emotes: list | None, content: str) -> bool:
    if emotes:
        return True
    return bool(extract_emotes_from_content(content))


def analyze_engagement_type(content: str, emotes_present: bool) -> EngagementType:
    """Classify a line; the first matching rule wins."""
    text = (content or "").strip().lower()
    length = len(text)

    if text.startswith("!"):
        return EngagementType.COMMAND
    if "?" in text or text.startswith(_QUESTION_WORDS):
        return EngagementType.QUESTION
    if length <= 5 and emotes_present:
        return EngagementType.REACTION
    if length <= 10 and not emotes_present:
        return EngagementType.SHORT_MESSAGE
    if count_exclamations(content) >= 2:
        return EngagementType.ENTHUSIASTIC
    if length > 100:
        return EngagementType.CONVERSATION
    if count_sentences(content) >= 2:
        return EngagementType.DISCUSSION
    if emotes_present and length <= 20:
        return EngagementType.EMOTE_RESPONSE
    return EngagementType.REGULAR


def analyze(content: str, emotes: list | None) -> MessageAnalytics:
    """All derived fields for one line."""
    emotes_present = has_emotes(emotes, content)
    return MessageAnalytics(
        has_emotes=emotes_present,
        engagement_type=analyze_engagement_type(content, emotes_present),
        message_length=message_length(content),
        exclamation_count=count_exclamations(content),
        sentence_count=count_sentences(content),
    )
