"""Tests for the per-user RateLimiter."""

from __future__ import annotations

import threading

import pytest

from crm_assistant.application.exceptions import RateLimitedError
from crm_assistant.services.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(max_messages=5, min_interval_seconds=10, clock=clock)


def _send_many(limiter: RateLimiter, count: int, user: str = "u1") -> None:
    for _ in range(count):
        limiter.acquire(user)


class TestRateLimiter:
    def test_first_messages_never_limited(self, limiter: RateLimiter):
        _send_many(limiter, 5)

    def test_rejects_fast_send_after_threshold(self, limiter: RateLimiter, clock: FakeClock):
        _send_many(limiter, 5)
        clock.now += 3
        with pytest.raises(RateLimitedError) as exc_info:
            limiter.acquire("u1")
        assert exc_info.value.retry_after == pytest.approx(7)
        assert "wait a moment" in str(exc_info.value)

    def test_allows_after_interval(self, limiter: RateLimiter, clock: FakeClock):
        _send_many(limiter, 5)
        clock.now += 10
        limiter.acquire("u1")

    def test_rejected_send_is_not_recorded(self, limiter: RateLimiter, clock: FakeClock):
        _send_many(limiter, 5)
        clock.now += 4
        with pytest.raises(RateLimitedError):
            limiter.acquire("u1")
        clock.now += 6
        limiter.acquire("u1")

    def test_users_are_independent(self, limiter: RateLimiter):
        _send_many(limiter, 5, "u1")
        limiter.acquire("u2")
        with pytest.raises(RateLimitedError):
            limiter.acquire("u1")


class TestReservations:
    def test_release_returns_the_slot(self, limiter: RateLimiter, clock: FakeClock):
        _send_many(limiter, 4)
        clock.now += 1
        reservation = limiter.acquire("u1")
        limiter.release(reservation)

        # back to four counted sends, so the next one is not throttled
        limiter.acquire("u1")

    def test_release_restores_previous_timestamp(self, limiter: RateLimiter, clock: FakeClock):
        _send_many(limiter, 5)
        clock.now += 10
        limiter.release(limiter.acquire("u1"))

        # the interval runs from the last kept send at t=1000, not the released one
        clock.now += 1
        limiter.acquire("u1")

    def test_concurrent_acquires_cannot_exceed_limit(self, clock: FakeClock):
        limiter = RateLimiter(max_messages=1, min_interval_seconds=10, clock=clock)
        barrier = threading.Barrier(20)
        accepted: list[str] = []
        rejected: list[str] = []

        def send(name: str) -> None:
            barrier.wait()
            try:
                limiter.acquire("u1")
            except RateLimitedError:
                rejected.append(name)
            else:
                accepted.append(name)

        threads = [threading.Thread(target=send, args=(f"t{i}",)) for i in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(accepted) == 1
        assert len(rejected) == 19
