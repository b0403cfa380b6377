"""
kickback.engine.retry — Retry policy for transient database errors
===================================================================

One policy object, used by both the job-claim path and the award path:
bounded attempts, exponential backoff, and a predicate that decides which
errors are worth another try.

Transient (retried):
    lock / statement timeout, serialization failure, deadlock,
    connection-pool exhaustion.

Everything else (unique violations, schema errors, lost connections)
propagates on the first occurrence.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import exc as sa_exc

if TYPE_CHECKING:
    from kickback.config import RewardConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransientKind(enum.StrEnum):
    TIMEOUT = "timeout"
    SERIALIZATION = "serialization"
    DEADLOCK = "deadlock"
    POOL_EXHAUSTION = "pool-exhaustion"


class TransientDbError(Exception):
    """A transient error that outlived its retry budget."""

    def __init__(self, kind: TransientKind, attempts: int) -> None:
        super().__init__(f"{kind} after {attempts} attempt(s)")
        self.kind = kind
        self.attempts = attempts


# PostgreSQL SQLSTATE → kind
_SQLSTATE_KINDS: dict[str, TransientKind] = {
    "40001": TransientKind.SERIALIZATION,   # serialization_failure
    "40P01": TransientKind.DEADLOCK,        # deadlock_detected
    "55P03": TransientKind.TIMEOUT,         # lock_not_available (lock_timeout)
    "57014": TransientKind.TIMEOUT,         # query_canceled (statement_timeout)
}

_MESSAGE_KINDS: tuple[tuple[str, TransientKind], ...] = (
    ("could not serialize access", TransientKind.SERIALIZATION),
    ("deadlock detected", TransientKind.DEADLOCK),
    ("lock timeout", TransientKind.TIMEOUT),
    ("canceling statement due to", TransientKind.TIMEOUT),
    ("database is locked", TransientKind.TIMEOUT),  # SQLite busy
)


def classify_transient(exc: BaseException) -> TransientKind | None:
    """Return the transient kind of *exc*, or ``None`` if it is not retryable."""
    if isinstance(exc, TransientDbError):
        return exc.kind
    # QueuePool limit reached / pool_timeout expired
    if isinstance(exc, sa_exc.TimeoutError):
        return TransientKind.POOL_EXHAUSTION
    if isinstance(exc, sa_exc.IntegrityError):
        return None
    if isinstance(exc, sa_exc.DBAPIError):
        orig = exc.orig
        code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if code in _SQLSTATE_KINDS:
            return _SQLSTATE_KINDS[code]
        message = str(orig).lower()
        for needle, kind in _MESSAGE_KINDS:
            if needle in message:
                return kind
    return None


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Delay before retry *n* (1-based) is
    ``min(base_delay * multiplier ** (n - 1), max_delay)``;
    the defaults give 100 ms, 200 ms, 400 ms … capped at 1 s.
    """

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 1.0
    multiplier: float = 2.0
    classify: Callable[[BaseException], TransientKind | None] = classify_transient
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_config(cls, cfg: RewardConfig, **overrides: Any) -> RetryPolicy:
        return cls(
            max_attempts=cfg.retry_max_attempts,
            base_delay=cfg.retry_base_delay,
            max_delay=cfg.retry_max_delay,
            **overrides,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call *func*, retrying transient failures.

        Raises
        ------
        TransientDbError
            When the last allowed attempt still fails transiently (the
            original error is chained as ``__cause__``).
        Exception
            Any non-transient error, unchanged, on first occurrence.
        """
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                kind = self.classify(exc)
                if kind is None:
                    raise
                if attempt >= self.max_attempts:
                    raise TransientDbError(kind, attempt) from exc
                delay = self.delay_for(attempt)
                logger.debug(
                    "Transient %s in %s (attempt %d/%d), retrying in %.0f ms",
                    kind, getattr(func, "__name__", func), attempt,
                    self.max_attempts, delay * 1000,
                )
                self.sleep(delay)
                attempt += 1
