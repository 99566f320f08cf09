"""
Analytics Rate Limiter — In-memory sliding window.

Keyed by tenant_id:user_id. Resets on deploy/crash; each worker keeps its own
windows.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Callable

logger = logging.getLogger(__name__)


class AnalyticsRateLimiter:
    """Sliding window rate limiter for dashboard endpoints."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        # key -> list of request timestamps
        self._windows: dict[str, list[float]] = defaultdict(list)
        self._clock = clock

    def check(self, tenant_id: str, user_id: str | None, rpm_limit: int) -> bool:
        """Check if request is allowed. Returns True if allowed, False if blocked."""
        key = f"{tenant_id}:{user_id or '-'}"
        now = self._clock()
        window_start = now - 60.0

        # Prune expired entries
        timestamps = self._windows[key]
        self._windows[key] = [t for t in timestamps if t > window_start]

        if len(self._windows[key]) >= rpm_limit:
            logger.warning("Analytics rate limit hit: %s (%d RPM)", key, rpm_limit)
            return False

        self._windows[key].append(now)
        return True

    def reset(self) -> None:
        """Clear all windows (for testing)."""
        self._windows.clear()


# Singleton
_rate_limiter: AnalyticsRateLimiter | None = None


def get_rate_limiter() -> AnalyticsRateLimiter:
    """Get or create the singleton rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = AnalyticsRateLimiter()
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the singleton (for testing)."""
    global _rate_limiter
    _rate_limiter = None
