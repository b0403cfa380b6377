"""
kickback.services.log_throttle — Once-per-window error logging
===============================================================

A database outage makes every poll fail the same way.  ``ThrottledLogger``
lets the first occurrence through and drops repeats of the same key until
the window (60 s by default) has passed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from threading import Lock


class ThrottledLogger:
    """Wraps a :class:`logging.Logger`, suppressing repeats per key.

    Thread-safe.  Keys default to the exception type plus the first 100
    characters of its message, so distinct failures are not merged.
    """

    def __init__(
        self,
        logger: logging.Logger,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.logger = logger
        self.window = window
        self._clock = clock
        self._lock = Lock()
        self._last: dict[str, float] = {}

    @staticmethod
    def key_for(message: str, exc: BaseException | None = None) -> str:
        if exc is not None:
            code = getattr(exc, "code", None)
            if code:
                return f"{code}:{message}"
            return f"{type(exc).__name__}:{str(exc)[:100]}:{message}"
        return message[:100]

    def allow(self, key: str) -> bool:
        """Return True (and start a new window) if *key* may be logged now."""
        now = self._clock()
        with self._lock:
            last = self._last.get(key)
            if last is not None and now - last < self.window:
                return False
            self._last[key] = now
            # Forget keys idle for five windows
            stale = [k for k, t in self._last.items() if now - t > self.window * 5]
            for k in stale:
                del self._last[k]
            return True

    def error(self, message: str, *args: object, exc: BaseException | None = None) -> bool:
        return self._emit(logging.ERROR, message, args, exc)

    def warning(self, message: str, *args: object, exc: BaseException | None = None) -> bool:
        return self._emit(logging.WARNING, message, args, exc)

    def _emit(
        self, level: int, message: str, args: tuple, exc: BaseException | None
    ) -> bool:
        if not self.allow(self.key_for(message, exc)):
            return False
        if exc is not None:
            self.logger.log(level, message + ": %s", *args, exc)
        else:
            self.logger.log(level, message, *args)
        return True
