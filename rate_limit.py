"""
Failed-login tracking.

State lives in process memory only: it resets on restart and is not shared
between workers or instances.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from config import LOGIN_LOCKOUT_WINDOW, LOGIN_MAX_ATTEMPTS


@dataclass
class Attempt:
    count: int
    timestamp: float


class LoginAttemptTracker:
    """Expiring key -> {count, timestamp} map, pruned lazily on every check."""

    def __init__(self, max_attempts: int = LOGIN_MAX_ATTEMPTS, window: float = LOGIN_LOCKOUT_WINDOW,
                 clock: Callable[[], float] = time.time):
        self.max_attempts = max_attempts
        self.window = window
        self.clock = clock
        self._attempts: Dict[str, Attempt] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [k for k, a in self._attempts.items() if now - a.timestamp > self.window]
        for k in expired:
            del self._attempts[k]

    def is_locked(self, key: str) -> bool:
        with self._lock:
            self._prune(self.clock())
            attempt = self._attempts.get(key)
            return attempt is not None and attempt.count >= self.max_attempts

    def record_failure(self, key: str) -> int:
        """Count a failed attempt and return the running total for `key`."""
        with self._lock:
            now = self.clock()
            attempt = self._attempts.get(key)
            if attempt is None:
                attempt = self._attempts[key] = Attempt(count=0, timestamp=now)
            attempt.count += 1
            attempt.timestamp = now
            return attempt.count

    def clear(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._attempts.clear()

    def __len__(self) -> int:
        return len(self._attempts)
