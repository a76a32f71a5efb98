"""
Rate Limiter Tests
Fixed-window counting per (actor, action)
"""

import pytest

from middleware.rate_limiter import RateLimiter, get_rate_limit_config
from utils.exception_handler import TooManyRequestsError


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


class TestFixedWindow:

    def test_allows_up_to_limit(self, limiter):
        results = [limiter.is_rate_limited("7", "trade_create", 3, 60)[0] for _ in range(3)]
        assert results == [False, False, False]

        limited, reset = limiter.is_rate_limited("7", "trade_create", 3, 60)
        assert limited is True
        assert reset == 60

    def test_window_resets(self, limiter, clock):
        for _ in range(3):
            limiter.is_rate_limited("7", "trade_create", 3, 60)
        clock.now += 60

        assert limiter.is_rate_limited("7", "trade_create", 3, 60) == (False, None)

    def test_reset_countdown(self, limiter, clock):
        limiter.is_rate_limited("7", "trade_create", 1, 60)
        clock.now += 45.5

        assert limiter.is_rate_limited("7", "trade_create", 1, 60) == (True, 15)

    def test_actors_and_actions_are_independent(self, limiter):
        limiter.is_rate_limited("7", "trade_create", 1, 60)

        assert limiter.is_rate_limited("8", "trade_create", 1, 60)[0] is False
        assert limiter.is_rate_limited("7", "withdraw_create", 1, 60)[0] is False
        assert limiter.is_rate_limited("7", "trade_create", 1, 60)[0] is True

    def test_reset_user_limits(self, limiter):
        limiter.is_rate_limited("7", "trade_create", 1, 60)
        limiter.is_rate_limited("8", "trade_create", 1, 60)

        limiter.reset_user_limits(7)

        assert limiter.is_rate_limited("7", "trade_create", 1, 60)[0] is False
        assert limiter.is_rate_limited("8", "trade_create", 1, 60)[0] is True


class TestCheck:

    def test_withdraw_limit_is_ten_per_minute(self, limiter):
        for _ in range(10):
            limiter.check(42, "withdraw_create")

        with pytest.raises(TooManyRequestsError) as exc_info:
            limiter.check(42, "withdraw_create")

        assert exc_info.value.retry_after == 60
        assert exc_info.value.http_status == 429

    def test_unknown_action_uses_general_limits(self):
        assert get_rate_limit_config("something_else") == {"max_requests": 30, "window_seconds": 60}
