"""
kickback.engine.anti_gaming — Bot-message heuristics
=====================================================

Scores a chat line for signs of automation.  A line scoring at or above
:data:`~kickback.constants.BOT_SCORE_THRESHOLD` earns nothing.

Signals (additive):

  +30  exact duplicate of one of the sender's recent lines
  +10  fewer than 3 characters after trimming
  +20  one character makes up over half of a line longer than 10
  +25  opens like a promo / automation command
  +15  more than one URL
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

from kickback.constants import BOT_SCORE_THRESHOLD

_BOT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(follow|sub|like|view|watch)\s+(me|my|channel|stream)", re.IGNORECASE),
    re.compile(r"^(check out|visit|go to)\s+(my|this)\s+(channel|stream|link)", re.IGNORECASE),
    re.compile(r"^(auto|bot|spam)", re.IGNORECASE),
)

_URL = re.compile(r"https?://\S+")


@dataclass(frozen=True, slots=True)
class BotDetection:
    score: int = 0
    reasons: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_bot(self) -> bool:
        return self.score >= BOT_SCORE_THRESHOLD


def detect_bot_message(content: str, recent: Iterable[str] = ()) -> BotDetection:
    """Score *content* against the heuristics above.

    *recent* holds the sender's previous lines (most recent first, any
    length); only exact matches count as duplicates.
    """
    content = content or ""
    score = 0
    reasons: list[str] = []

    if content in set(recent):
        score += 30
        reasons.append("duplicate message")

    if len(content.strip()) < 3:
        score += 10
        reasons.append("very short message")

    if len(content) > 10:
        most_common = Counter(content).most_common(1)[0][1]
        if most_common > len(content) * 0.5:
            score += 20
            reasons.append("excessive character repetition")

    if any(p.search(content) for p in _BOT_PATTERNS):
        score += 25
        reasons.append("bot-like pattern")

    if len(_URL.findall(content)) > 1:
        score += 15
        reasons.append("multiple URLs")

    return BotDetection(score=score, reasons=tuple(reasons))
