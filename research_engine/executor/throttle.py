"""Poll throttling for status reads.

Status polls may trigger an orchestration pass, but at most once per
interval per key. State lives on the PollThrottle instance, which callers
inject, rather than in module globals.
"""

import threading
import time
from typing import Callable, Optional

from research_engine.config import POLL_THROTTLE_SECONDS

MIN_INTERVAL_SECONDS = 1.0
MAX_TRACKED_KEYS = 2000


class PollThrottle:
    """Per-key minimum interval between attempts."""

    def __init__(
        self,
        interval_seconds: float = POLL_THROTTLE_SECONDS,
        max_keys: int = MAX_TRACKED_KEYS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval_seconds = max(MIN_INTERVAL_SECONDS, float(interval_seconds))
        self.max_keys = max_keys
        self._clock = clock
        self._last_attempt: dict[str, float] = {}
        self._lock = threading.Lock()

    def should_attempt(self, key: str, now: Optional[float] = None) -> bool:
        """Record and allow an attempt if the key's interval has elapsed."""
        now = self._clock() if now is None else now
        with self._lock:
            last = self._last_attempt.get(key)
            if last is not None and now - last < self.interval_seconds:
                return False
            self._last_attempt[key] = now
            if len(self._last_attempt) > self.max_keys:
                self._prune(now)
            return True

    def reset(self, key: str) -> None:
        with self._lock:
            self._last_attempt.pop(key, None)

    def _prune(self, now: float) -> None:
        # Drop expired entries first, then the oldest ones if still too many
        expired = [k for k, t in self._last_attempt.items() if now - t >= self.interval_seconds]
        for key in expired:
            del self._last_attempt[key]
        overflow = len(self._last_attempt) - self.max_keys
        if overflow > 0:
            oldest = sorted(self._last_attempt.items(), key=lambda kv: kv[1])[:overflow]
            for key, _ in oldest:
                del self._last_attempt[key]
