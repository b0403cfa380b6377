"""
kickback.constants — Shared Constants
======================================

Single source of truth for identifiers and defaults shared by the worker,
the reward engine, and the API.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Reward policy defaults (overridable from config.yaml)
# ---------------------------------------------------------------------------
DEFAULT_BOT_USERNAMES: frozenset[str] = frozenset({"botrix", "kickbot", "sweetflipsbot"})

DEFAULT_SUBSCRIBER_BADGE_TYPES: tuple[str, ...] = ("subscriber", "sub_gifter", "founder", "sub")

# ---------------------------------------------------------------------------
# Queue / worker
# ---------------------------------------------------------------------------
# pg_try_advisory_lock key owned by the chat worker.  Any other queue
# consumer must pick a different key.
CHAT_WORKER_LOCK_ID = 9223372036854775805

# last_error is truncated to this many characters
MAX_ERROR_LENGTH = 1000

# Bot-message heuristic score at which a message is treated as automated
BOT_SCORE_THRESHOLD = 40
