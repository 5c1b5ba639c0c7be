import pytest

from omi_assistant.services.errors import RateLimitExceeded
from omi_assistant.services.rate_limiter import NotificationRateLimiter

from conftest import FakeClock


class TestTryConsume:
    def test_allows_up_to_max(self):
        limiter = NotificationRateLimiter(max_per_window=10, window_seconds=3600, clock=FakeClock())
        decisions = [limiter.try_consume("u1") for _ in range(10)]
        assert all(decision.allowed for decision in decisions)
        assert decisions[-1].remaining == 0

    def test_denies_after_max_with_retry_after(self):
        clock = FakeClock()
        limiter = NotificationRateLimiter(max_per_window=10, window_seconds=3600, clock=clock)
        for _ in range(10):
            limiter.try_consume("u1")
            clock.advance(60)

        denied = limiter.try_consume("u1")

        assert denied.allowed is False
        assert denied.retry_after_seconds > 0
        # Oldest timestamp is 600s old, so it frees up in 3000s
        assert denied.retry_after_seconds == 3000

    def test_allowed_again_after_window_elapses(self):
        clock = FakeClock()
        limiter = NotificationRateLimiter(max_per_window=3, window_seconds=3600, clock=clock)
        for _ in range(3):
            limiter.try_consume("u1")
        assert limiter.try_consume("u1").allowed is False

        clock.advance(3600)
        assert limiter.try_consume("u1").allowed is True

    def test_denials_do_not_extend_window(self):
        clock = FakeClock()
        limiter = NotificationRateLimiter(max_per_window=1, window_seconds=100, clock=clock)
        limiter.try_consume("u1")
        clock.advance(50)
        limiter.try_consume("u1")
        clock.advance(50)
        assert limiter.try_consume("u1").allowed is True

    def test_users_are_independent(self):
        limiter = NotificationRateLimiter(max_per_window=1, clock=FakeClock())
        assert limiter.try_consume("u1").allowed is True
        assert limiter.try_consume("u2").allowed is True
        assert limiter.try_consume("u1").allowed is False


class TestStatus:
    def test_status_does_not_consume(self):
        limiter = NotificationRateLimiter(max_per_window=2, clock=FakeClock())
        limiter.try_consume("u1")

        status = limiter.status("u1")

        assert status.used == 1
        assert status.remaining == 1
        assert status.is_limited is False
        assert limiter.status("u1").used == 1

    def test_status_for_unknown_user(self):
        limiter = NotificationRateLimiter(max_per_window=2, clock=FakeClock())
        status = limiter.status("nobody")
        assert status.remaining == 2
        assert status.retry_after_seconds == 0
        assert len(limiter) == 0

    def test_limited_status_reports_retry_after(self):
        limiter = NotificationRateLimiter(max_per_window=1, window_seconds=100, clock=FakeClock())
        limiter.try_consume("u1")
        status = limiter.status("u1")
        assert status.is_limited is True
        assert status.retry_after_seconds == 100


class TestSweep:
    def test_sweep_forgets_idle_users(self):
        clock = FakeClock()
        limiter = NotificationRateLimiter(max_per_window=5, window_seconds=100, clock=clock)
        limiter.try_consume("u1")
        clock.advance(60)
        limiter.try_consume("u2")
        clock.advance(50)

        assert limiter.sweep() == 1
        assert len(limiter) == 1

    def test_idle_users_are_evicted_past_high_water_mark(self):
        clock = FakeClock()
        limiter = NotificationRateLimiter(max_per_window=5, window_seconds=100, max_users=50, clock=clock)
        for i in range(50):
            limiter.try_consume(f"user-{i}")
        clock.advance(101)

        limiter.try_consume("fresh")

        assert len(limiter) == 1
        assert limiter.status("fresh").used == 1


class TestConsume:
    def test_denial_raises_with_retry_after(self):
        limiter = NotificationRateLimiter(max_per_window=1, window_seconds=100, clock=FakeClock())
        limiter.consume("u1")

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.consume("u1")

        assert exc_info.value.retry_after_seconds == 100
