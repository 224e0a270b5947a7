"""Per-user send throttle applied before a chat turn starts."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from crm_assistant.application.exceptions import RateLimitedError


@dataclass
class _UserWindow:
    sent: int = 0
    last_sent_at: float | None = None


@dataclass(frozen=True)
class Reservation:
    """A send counted by ``RateLimiter.acquire``; handed back to ``release`` to undo it."""

    user_id: str
    previous_sent_at: float | None
    sent_at: float


class RateLimiter:
    """Throttles users who already sent ``max_messages``.

    Once a user has that many accepted sends, a new send arriving less than
    ``min_interval_seconds`` after their previous one is rejected. Users below
    the count are never throttled.
    """

    def __init__(
        self,
        max_messages: int = 5,
        min_interval_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_messages = max_messages
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._users: dict[str, _UserWindow] = {}
        self._lock = threading.Lock()

    def _retry_after(self, window: _UserWindow | None, now: float) -> float:
        if window is None or window.last_sent_at is None or window.sent < self.max_messages:
            return 0.0
        return max(0.0, self.min_interval_seconds - (now - window.last_sent_at))

    def acquire(self, user_id: str) -> Reservation:
        """Check and count a send for *user_id* in one step.

        Concurrent sends from the same user see each other's reservation, so
        together they cannot exceed the limit.

        Raises:
            RateLimitedError: If *user_id* must wait; nothing is counted.
        """
        with self._lock:
            now = self._clock()
            window = self._users.setdefault(user_id, _UserWindow())
            retry_after = self._retry_after(window, now)
            if retry_after <= 0:
                reservation = Reservation(user_id, window.last_sent_at, now)
                window.sent += 1
                window.last_sent_at = now
        if retry_after > 0:
            logger.info("Rate limited | user={} retry_after={:.1f}s", user_id, retry_after)
            raise RateLimitedError(retry_after)
        return reservation

    def release(self, reservation: Reservation) -> None:
        """Undo an ``acquire`` for a send that was rejected before it started."""
        with self._lock:
            window = self._users.get(reservation.user_id)
            if window is None or window.sent == 0:
                return
            window.sent -= 1
            if window.last_sent_at == reservation.sent_at:
                window.last_sent_at = reservation.previous_sent_at
