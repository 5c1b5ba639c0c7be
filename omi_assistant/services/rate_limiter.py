import math
import time
from dataclasses import dataclass
from typing import Callable

from omi_assistant.logging_config import get_logger
from omi_assistant.services.errors import RateLimitExceeded
from omi_assistant.services.keyed_locks import KeyedLocks

logger = get_logger("rate_limiter")

DEFAULT_MAX_PER_WINDOW = 10
DEFAULT_WINDOW_SECONDS = 60 * 60
DEFAULT_MAX_USERS = 1000


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0
    remaining: int = 0


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    used: int
    remaining: int
    retry_after_seconds: int

    @property
    def is_limited(self) -> bool:
        return self.remaining <= 0


class NotificationRateLimiter:
    """Sliding window of outbound notification timestamps per destination user."""

    def __init__(
        self,
        max_per_window: int = DEFAULT_MAX_PER_WINDOW,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        max_users: int = DEFAULT_MAX_USERS,
        clock: Callable[[], float] = time.time,
        lock_stripes: int = 64,
    ):
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self.max_users = max_users
        self._clock = clock
        self._windows: dict[str, list[float]] = {}
        self._locks = KeyedLocks(lock_stripes)

    def _prune(self, user_id: str, now: float) -> list[float]:
        timestamps = [ts for ts in self._windows.get(user_id, []) if now - ts < self.window_seconds]
        if user_id in self._windows:
            self._windows[user_id] = timestamps
        return timestamps

    def _retry_after(self, timestamps: list[float], now: float) -> int:
        if len(timestamps) < self.max_per_window or not timestamps:
            return 0
        # The slot frees up when the oldest timestamp that keeps us at the cap expires
        oldest = timestamps[len(timestamps) - self.max_per_window]
        return max(1, math.ceil(oldest + self.window_seconds - now))

    def try_consume(self, user_id: str) -> RateLimitDecision:
        with self._locks.for_key(user_id):
            now = self._clock()
            timestamps = self._prune(user_id, now)
            if len(timestamps) >= self.max_per_window:
                retry_after = self._retry_after(timestamps, now)
                logger.info(
                    "Notification rate limit reached",
                    extra={"context": {"user_id": user_id, "retry_after_seconds": retry_after}},
                )
                return RateLimitDecision(allowed=False, retry_after_seconds=retry_after, remaining=0)
            timestamps.append(now)
            self._windows[user_id] = timestamps
            decision = RateLimitDecision(allowed=True, remaining=self.max_per_window - len(timestamps))

        if len(self._windows) > self.max_users:
            self.sweep()
        return decision

    def consume(self, user_id: str) -> RateLimitDecision:
        """Like ``try_consume`` but raises ``RateLimitExceeded`` on denial."""
        decision = self.try_consume(user_id)
        if not decision.allowed:
            raise RateLimitExceeded(decision.retry_after_seconds)
        return decision

    def status(self, user_id: str) -> RateLimitStatus:
        with self._locks.for_key(user_id):
            now = self._clock()
            timestamps = self._prune(user_id, now)
            used = len(timestamps)
            return RateLimitStatus(
                limit=self.max_per_window,
                used=used,
                remaining=max(0, self.max_per_window - used),
                retry_after_seconds=self._retry_after(timestamps, now),
            )

    def sweep(self) -> int:
        """Forget users whose window has fully elapsed."""
        removed = 0
        for user_id in list(self._windows):
            with self._locks.for_key(user_id):
                if not self._prune(user_id, self._clock()):
                    del self._windows[user_id]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._windows)
