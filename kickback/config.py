"""
kickback.config — YAML + Environment Configuration
===================================================

Two sources, two objects:

* ``config.yaml`` holds the **reward policy** (coins per message, the
  rate-limit window, bot usernames, retry bounds).  Loaded by
  :func:`load_config` into a :class:`RewardConfig`.
* Environment variables hold the **worker knobs** (batch size, poll
  interval, concurrency ...).  Loaded by :func:`load_worker_config` into a
  :class:`WorkerConfig`.  ``.env`` is read by the entry point via
  ``python-dotenv`` before this runs.

Both objects are immutable and passed explicitly into the components that
need them.

Usage::

    from kickback.config import load_config, load_worker_config

    policy = load_config()              # reads ./config.yaml by default
    knobs = load_worker_config()        # reads CHAT_WORKER_* from os.environ
    print(policy.rate_limit_seconds)    # 300
    print(knobs.concurrency)            # 10
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from kickback.constants import (
    DEFAULT_BOT_USERNAMES,
    DEFAULT_SUBSCRIBER_BADGE_TYPES,
)


# ---------------------------------------------------------------------------
# Reward policy — from config.yaml
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RewardConfig:
    """Immutable reward policy loaded from ``config.yaml``."""

    coins_per_message: int = 1
    coins_per_message_subscriber: int = 1
    rate_limit_seconds: int = 300

    bot_usernames: frozenset[str] = field(default_factory=lambda: DEFAULT_BOT_USERNAMES)
    subscriber_badge_types: tuple[str, ...] = DEFAULT_SUBSCRIBER_BADGE_TYPES

    # Engine-level retry for transient DB errors
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.1
    retry_max_delay: float = 1.0

    # Per-transaction bounds (PostgreSQL only)
    lock_timeout_ms: int = 10_000
    statement_timeout_ms: int = 30_000

    # How long after a session ends a chat line may still attach to it
    post_end_attach_seconds: int = 120


# ---------------------------------------------------------------------------
# Worker knobs — from the environment
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class WorkerConfig:
    """Immutable worker settings read from ``CHAT_WORKER_*`` variables."""

    batch_size: int = 25
    poll_interval: float = 0.1          # seconds
    concurrency: int = 10
    stale_lock_seconds: int = 300
    stats_interval: float = 30.0        # seconds
    max_attempts: int = 5
    drain_timeout: float = 30.0         # seconds
    verbose: bool = False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> RewardConfig:
    """Read *path* and return a :class:`RewardConfig` instance.

    Every key is optional; absent keys keep the dataclass default.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a numeric setting is not positive.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = RewardConfig()
    rewards = raw.get("rewards", {}) or {}
    retry = raw.get("retry", {}) or {}
    database = raw.get("database", {}) or {}
    sessions = raw.get("sessions", {}) or {}

    cfg = RewardConfig(
        coins_per_message=int(rewards.get("coins_per_message", defaults.coins_per_message)),
        coins_per_message_subscriber=int(
            rewards.get("coins_per_message_subscriber", defaults.coins_per_message_subscriber)
        ),
        rate_limit_seconds=int(rewards.get("rate_limit_seconds", defaults.rate_limit_seconds)),
        bot_usernames=frozenset(
            name.lower() for name in rewards.get("bot_usernames", defaults.bot_usernames)
        ),
        subscriber_badge_types=tuple(
            rewards.get("subscriber_badge_types", defaults.subscriber_badge_types)
        ),
        retry_max_attempts=int(retry.get("max_attempts", defaults.retry_max_attempts)),
        retry_base_delay=float(retry.get("base_delay", defaults.retry_base_delay)),
        retry_max_delay=float(retry.get("max_delay", defaults.retry_max_delay)),
        lock_timeout_ms=int(database.get("lock_timeout_ms", defaults.lock_timeout_ms)),
        statement_timeout_ms=int(
            database.get("statement_timeout_ms", defaults.statement_timeout_ms)
        ),
        post_end_attach_seconds=int(
            sessions.get("post_end_attach_seconds", defaults.post_end_attach_seconds)
        ),
    )

    for name in ("rate_limit_seconds", "retry_max_attempts"):
        if getattr(cfg, name) <= 0:
            raise ValueError(f"{name} must be positive, got {getattr(cfg, name)}")
    return cfg


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    value = int(raw)
    if value <= 0:
        raise ValueError(f"{key} must be positive, got {value}")
    return value


def load_worker_config(environ: Mapping[str, str] | None = None) -> WorkerConfig:
    """Build a :class:`WorkerConfig` from ``CHAT_WORKER_*`` variables.

    Millisecond variables are converted to seconds.  Blank or missing
    variables fall back to the defaults.

    Raises
    ------
    ValueError
        If a variable is not a positive integer.
    """
    env = os.environ if environ is None else environ
    d = WorkerConfig()
    return WorkerConfig(
        batch_size=_env_int(env, "CHAT_WORKER_BATCH_SIZE", d.batch_size),
        poll_interval=_env_int(
            env, "CHAT_WORKER_POLL_INTERVAL_MS", int(d.poll_interval * 1000)
        ) / 1000,
        concurrency=_env_int(env, "CHAT_WORKER_CONCURRENCY", d.concurrency),
        stale_lock_seconds=_env_int(env, "CHAT_WORKER_STALE_LOCK_SECONDS", d.stale_lock_seconds),
        stats_interval=_env_int(
            env, "CHAT_WORKER_STATS_INTERVAL_MS", int(d.stats_interval * 1000)
        ) / 1000,
        max_attempts=_env_int(env, "CHAT_WORKER_MAX_ATTEMPTS", d.max_attempts),
        drain_timeout=float(
            _env_int(env, "CHAT_WORKER_DRAIN_TIMEOUT_SECONDS", int(d.drain_timeout))
        ),
        verbose=env.get("CHAT_WORKER_VERBOSE_LOGS", "").strip().lower() == "true",
    )
