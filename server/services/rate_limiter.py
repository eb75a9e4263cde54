"""
Sliding-window rate limiter with temporary bans, keyed by connection id.

Usage:
    limiter = RateLimiter()
    if limiter.allow(connection_id):
        # dispatch frame
    else:
        # drop frame / close channel
    limiter.forget(connection_id)  # on disconnect
"""
import time
from collections import deque, defaultdict
from typing import Callable, Deque, Dict

WINDOW_SECONDS: float = 5        # length of the sliding window in seconds
MAX_MSG_PER_WIN: int = 60        # max inbound frames within the window
BAN_SECONDS: float = 30          # ban duration once the limit is exceeded


class RateLimiter:
    """
    Tracks recent inbound frames per key and bans keys that exceed the limit.
    """

    def __init__(
            self,
            window: float = WINDOW_SECONDS,
            max_hits: int = MAX_MSG_PER_WIN,
            ban: float = BAN_SECONDS,
            clock: Callable[[], float] = time.monotonic) -> None:
        """
        Args:
            window (float): Sliding window length in seconds.
            max_hits (int): Frames allowed within one window.
            ban (float): Ban duration in seconds.
            clock (callable): Monotonic time source.
        """
        self.window = window
        self.max_hits = max_hits
        self.ban = ban
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._banned_until: Dict[str, float] = {}

    def allow(self, key: str) -> bool:
        """
        Record one frame for `key` and decide whether it may be processed.

        Returns:
            bool: False if `key` is banned or just exceeded the limit.
        """
        now = self._clock()

        ban_deadline = self._banned_until.get(key)
        if ban_deadline is not None:
            if now < ban_deadline:
                return False
            del self._banned_until[key]

        hits = self._hits[key]
        hits.append(now)
        while hits and now - hits[0] > self.window:
            hits.popleft()

        if len(hits) > self.max_hits:
            self._banned_until[key] = now + self.ban
            hits.clear()
            return False
        return True

    def is_banned(self, key: str) -> bool:
        return self._banned_until.get(key, 0) > self._clock()

    def forget(self, key: str) -> None:
        """Clear all state for `key`, e.g. once its connection is gone."""
        self._hits.pop(key, None)
        self._banned_until.pop(key, None)
