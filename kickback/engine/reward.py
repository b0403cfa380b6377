"""
kickback.engine.reward — Award Policy & Outcomes
================================================

Pure policy helpers for the coin award path.  No DB I/O here; the
transactional side lives in :mod:`kickback.services.reward_service`.

Every call to ``CoinAwarder.award`` ends in exactly one of three outcomes:

  Awarded       coins were credited
  NotEligible   nothing credited, with a reason (offline, excluded …)
  RateLimited   nothing credited, the user's window is still open
"""

from __future__ import annotations

import enum
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from kickback.config import RewardConfig
from kickback.engine.events import Badge

__all__ = [
    "AwardOutcome",
    "Awarded",
    "NotEligible",
    "RateLimited",
    "Reason",
    "as_utc",
    "coins_for_message",
    "format_remaining",
    "is_bot_username",
    "is_subscriber",
    "rate_limit_remaining",
]


class Reason(enum.StrEnum):
    """Machine-stable reasons carried by :class:`NotEligible`."""
    USER_NOT_FOUND = "user not found"
    NOT_CONNECTED = "account not connected"
    EXCLUDED = "excluded user"
    BOT_ACCOUNT = "bot account"
    STREAM_OFFLINE = "stream offline"
    SESSION_ENDED = "session ended"
    ALREADY_PROCESSED = "already processed"
    BOT_DETECTED = "bot detected"
    TRANSACTION_CONFLICT = "transaction conflict"


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Awarded:
    amount: int

    @property
    def awarded(self) -> bool:
        return True

    @property
    def reason(self) -> str | None:
        return None


@dataclass(frozen=True, slots=True)
class NotEligible:
    """Nothing credited.

    ``amount`` is 0 except for ``already processed``, where it echoes the
    amount recorded by the earlier award.
    """

    reason: Reason
    amount: int = 0

    @property
    def awarded(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class RateLimited:
    remaining_seconds: int

    @property
    def awarded(self) -> bool:
        return False

    @property
    def amount(self) -> int:
        return 0

    @property
    def reason(self) -> str:
        return f"rate limited: {format_remaining(self.remaining_seconds)} remaining"


AwardOutcome = Awarded | NotEligible | RateLimited


# ---------------------------------------------------------------------------
# Policy helpers
# ---------------------------------------------------------------------------
def is_bot_username(username: str | None, cfg: RewardConfig) -> bool:
    return bool(username) and username.lower() in cfg.bot_usernames


def is_subscriber(badges: Iterable[Badge | dict] | None, cfg: RewardConfig) -> bool:
    """True if any badge marks the sender as a subscriber.

    A badge counts when its type contains one of the configured subscriber
    types, or its text contains "sub".  Both checks are case-insensitive.
    """
    for badge in badges or ():
        if isinstance(badge, dict):
            badge = Badge.model_validate(badge)
        kind = (badge.type or "").lower()
        text = (badge.text or "").lower()
        if any(t in kind for t in cfg.subscriber_badge_types) or "sub" in text:
            return True
    return False


def coins_for_message(subscriber: bool, cfg: RewardConfig) -> int:
    return cfg.coins_per_message_subscriber if subscriber else cfg.coins_per_message


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def rate_limit_remaining(
    last_awarded_at: datetime | None, now: datetime, window_seconds: int
) -> int:
    """Whole seconds until the user may earn again (0 = may earn now)."""
    if last_awarded_at is None:
        return 0
    elapsed = (as_utc(now) - as_utc(last_awarded_at)).total_seconds()
    if elapsed >= window_seconds:
        return 0
    return max(1, math.ceil(window_seconds - elapsed))


def format_remaining(seconds: int) -> str:
    minutes, secs = divmod(max(0, seconds), 60)
    return f"{minutes}m {secs}s"
