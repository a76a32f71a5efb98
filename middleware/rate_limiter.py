"""
Rate Limiting Middleware
Per-actor fixed-window limits on balance-affecting user actions

Process-local and best effort: with several workers each keeps its own
counters. It shapes load; ledger correctness never depends on it.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from config import Config
from utils.exception_handler import TooManyRequestsError

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Simple in-memory fixed-window rate limiter"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: Dict[Tuple[str, str], _Window] = {}  # (actor, action) -> window
        self._lock = threading.Lock()

    def is_rate_limited(
        self,
        actor_key: str,
        action: str = "general",
        max_requests: int = 30,
        window_seconds: int = 60,
    ) -> Tuple[bool, Optional[int]]:
        """
        Count one request against the actor's current window

        Args:
            actor_key: Stable identity of the caller (user id)
            action: Action being performed
            max_requests: Maximum requests allowed in window
            window_seconds: Window length in seconds

        Returns:
            Tuple of (is_limited, seconds_until_reset)
        """
        now = self._clock()
        key = (actor_key, action)

        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + window_seconds)
                return False, None

            if window.count >= max_requests:
                return True, max(1, int(window.reset_at - now + 0.999))

            window.count += 1
            return False, None

    def check(self, actor_key, action: str) -> None:
        """Raise TooManyRequestsError when the actor exhausted the action's window"""
        limits = get_rate_limit_config(action)
        is_limited, reset_time = self.is_rate_limited(
            str(actor_key), action, limits["max_requests"], limits["window_seconds"]
        )
        if is_limited:
            logger.warning(f"⏱️ RATE_LIMITED: actor {actor_key} on {action}, resets in {reset_time}s")
            raise TooManyRequestsError(
                f"Too many {action.replace('_', ' ')} requests. Please wait {reset_time} seconds and try again.",
                retry_after=reset_time,
            )

    def reset_user_limits(self, actor_key) -> None:
        """Reset all limits for an actor (admin function)"""
        with self._lock:
            for key in [k for k in self._windows if k[0] == str(actor_key)]:
                del self._windows[key]


# Global rate limiter instance
rate_limiter = RateLimiter()


# Rate limiting configurations for different actions
RATE_LIMITS = {
    "trade_create": {
        "max_requests": Config.TRADE_CREATE_RATE_LIMIT,
        "window_seconds": Config.RATE_LIMIT_WINDOW_SECONDS,
    },  # 30 trades per minute
    "withdraw_create": {
        "max_requests": Config.WITHDRAW_CREATE_RATE_LIMIT,
        "window_seconds": Config.RATE_LIMIT_WINDOW_SECONDS,
    },  # 10 withdrawal requests per minute

    # Default
    "general": {
        "max_requests": 30,
        "window_seconds": 60,
    },
}


def get_rate_limit_config(action: str) -> dict:
    """Get rate limit configuration for an action"""
    return RATE_LIMITS.get(action, RATE_LIMITS["general"])
