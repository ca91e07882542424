"""
PayVAT - Chat Rate Limiter

Fixed-window message limiter keyed by chat session id.

State is process-local and intentionally ephemeral: each key stores
(count, window_start) and a window resets on its own once it has elapsed.
The check-and-increment for a key happens under a lock so two concurrent
requests can never both take the last slot. The lock only guards the
in-memory counters and is never held across I/O.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, Optional, Tuple

from payvat.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""
    allowed: bool
    message: Optional[str] = None
    reset_in: Optional[float] = None  # seconds until the window resets

    @property
    def reset_in_seconds(self) -> int:
        """Whole seconds to wait, for user-facing messages and Retry-After."""
        if self.reset_in is None:
            return 0
        return max(1, math.ceil(self.reset_in))


class ChatRateLimiter:
    """
    Per-key fixed-window limiter.

    Usage:
        limiter = ChatRateLimiter(max_messages=10, window_seconds=60)
        result = limiter.check_limit(session_id)
        if not result.allowed:
            raise RateLimitException(result.reset_in_seconds, result.message)
    """

    # Expired windows are swept once the table grows past this size
    CLEANUP_THRESHOLD = 1000

    def __init__(
        self,
        max_messages: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_messages = max_messages
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def check_limit(self, key: str) -> RateLimitResult:
        """Consume one slot for key if the current window has room."""
        with self._lock:
            now = self._clock()

            if len(self._windows) > self.CLEANUP_THRESHOLD:
                self._cleanup_locked(now)

            count, window_start = self._windows.get(key, (0, now))
            if now - window_start >= self.window_seconds:
                count, window_start = 0, now

            if count >= self.max_messages:
                reset_in = self.window_seconds - (now - window_start)
                logger.info(f"Chat rate limit hit for session {key[:8]}..., reset in {reset_in:.1f}s")
                return RateLimitResult(
                    allowed=False,
                    reset_in=reset_in,
                    message=f"Rate limit exceeded. Please wait {max(1, math.ceil(reset_in))} seconds.",
                )

            self._windows[key] = (count + 1, window_start)
            return RateLimitResult(allowed=True)

    def status(self, key: str) -> Tuple[int, float]:
        """(remaining messages, seconds until reset) without consuming a slot."""
        with self._lock:
            now = self._clock()
            count, window_start = self._windows.get(key, (0, now))
            if now - window_start >= self.window_seconds:
                return self.max_messages, 0.0
            return max(0, self.max_messages - count), self.window_seconds - (now - window_start)

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def cleanup(self) -> int:
        """Drop expired windows. Returns the number removed."""
        with self._lock:
            return self._cleanup_locked(self._clock())

    def _cleanup_locked(self, now: float) -> int:
        expired = [
            key for key, (_, window_start) in self._windows.items()
            if now - window_start >= self.window_seconds
        ]
        for key in expired:
            del self._windows[key]
        return len(expired)


@lru_cache()
def get_chat_rate_limiter() -> ChatRateLimiter:
    """Process-wide limiter built from settings."""
    return ChatRateLimiter(
        max_messages=settings.chat_rate_limit_max_messages,
        window_seconds=settings.chat_rate_limit_window_seconds,
    )
