"""
Tests for the analytics rate limiter.

Covers: allow under limit, block over limit, window expiry.
"""

import pytest

from app.services.rate_limiter import (
    AnalyticsRateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ===========================================================================
# TestAnalyticsRateLimiter
# ===========================================================================


@pytest.mark.unit
class TestAnalyticsRateLimiter:
    """In-memory sliding window rate limiter."""

    def test_allows_under_limit(self) -> None:
        limiter = AnalyticsRateLimiter()
        for _ in range(5):
            assert limiter.check("tenant-a", "user-1", rpm_limit=10) is True

    def test_blocks_over_limit(self) -> None:
        limiter = AnalyticsRateLimiter()
        for _ in range(10):
            limiter.check("tenant-a", "user-1", rpm_limit=10)
        assert limiter.check("tenant-a", "user-1", rpm_limit=10) is False

    def test_different_users_have_separate_windows(self) -> None:
        limiter = AnalyticsRateLimiter()
        for _ in range(10):
            limiter.check("tenant-a", "user-1", rpm_limit=10)
        assert limiter.check("tenant-a", "user-2", rpm_limit=10) is True

    def test_different_tenants_have_separate_windows(self) -> None:
        limiter = AnalyticsRateLimiter()
        for _ in range(10):
            limiter.check("tenant-a", "user-1", rpm_limit=10)
        assert limiter.check("tenant-b", "user-1", rpm_limit=10) is True

    def test_window_expiry_allows_new_requests(self) -> None:
        clock = FakeClock()
        limiter = AnalyticsRateLimiter(clock=clock)
        for _ in range(10):
            limiter.check("tenant-a", "user-1", rpm_limit=10)
        assert limiter.check("tenant-a", "user-1", rpm_limit=10) is False

        # Simulate time passing (> 60 seconds)
        clock.now += 61.0
        assert limiter.check("tenant-a", "user-1", rpm_limit=10) is True

    def test_reset_clears_all_windows(self) -> None:
        limiter = AnalyticsRateLimiter()
        for _ in range(10):
            limiter.check("tenant-a", "user-1", rpm_limit=10)
        limiter.reset()
        assert limiter.check("tenant-a", "user-1", rpm_limit=10) is True

    def test_singleton_reset(self) -> None:
        first = get_rate_limiter()
        assert get_rate_limiter() is first
        reset_rate_limiter()
        assert get_rate_limiter() is not first
