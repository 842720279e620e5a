"""Client-side send throttling: per-send cool-down, circuit breaker and token-limit cooldown."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class ThrottleDecision:
    allowed: bool
    reason: str | None = None
    wait_seconds: float = 0.0


class RequestThrottle:
    """Rejects sends during a short cool-down and blocks after repeated failures.

    The breaker trips after `failure_threshold` failures within
    `failure_window` seconds and stays open for `block_duration` seconds.
    """

    def __init__(
        self,
        *,
        cooldown: float = 3.0,
        max_concurrent: int = 1,
        failure_threshold: int = 5,
        failure_window: float = 5 * 60,
        block_duration: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown = cooldown
        self.max_concurrent = max_concurrent
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.block_duration = block_duration
        self._clock = clock

        self.active_requests: set[str] = set()
        self.failed_count = 0
        self._last_request: float | None = None
        self._last_failure: float | None = None
        self._blocked_until: float | None = None

    @property
    def is_blocked(self) -> bool:
        return self._blocked_until is not None and self._blocked_until > self._clock()

    def remaining_cooldown(self) -> float:
        if self._last_request is None:
            return 0.0
        return max(0.0, self.cooldown - (self._clock() - self._last_request))

    def remaining_block(self) -> float:
        if self._blocked_until is None:
            return 0.0
        return max(0.0, self._blocked_until - self._clock())

    def check(self) -> ThrottleDecision:
        if self.is_blocked:
            return ThrottleDecision(
                False, "Too many failed requests. Please try again later.", self.remaining_block()
            )
        cooldown_left = self.remaining_cooldown()
        if cooldown_left > 0:
            return ThrottleDecision(False, "Please wait before sending another message.", cooldown_left)
        if len(self.active_requests) >= self.max_concurrent:
            return ThrottleDecision(False, "Another request is already in progress. Please wait.", 2.0)
        return ThrottleDecision(True)

    def start(self, request_id: str) -> bool:
        if not self.check().allowed:
            return False
        self._last_request = self._clock()
        self.active_requests.add(request_id)
        return True

    def complete(self, request_id: str, success: bool) -> None:
        self.active_requests.discard(request_id)
        now = self._clock()
        recent = self._last_failure is not None and now - self._last_failure <= self.failure_window

        if success:
            if recent:
                self.failed_count = max(0, self.failed_count - 1)
            return

        self.failed_count = self.failed_count + 1 if recent else 1
        self._last_failure = now
        if self.failed_count >= self.failure_threshold:
            self._blocked_until = now + self.block_duration
            logger.warning(
                f"Circuit breaker activated after {self.failed_count} failures, "
                f"blocking sends for {self.block_duration / 60:.0f} minutes"
            )

    def abandon(self, request_id: str) -> None:
        """Drop a request whose outcome no longer matters; the breaker never sees it."""
        self.active_requests.discard(request_id)

    def release_all(self) -> None:
        """Free the concurrency slots held by requests whose responses will be ignored."""
        self.active_requests.clear()

    def reset(self) -> None:
        self.failed_count = 0
        self._last_failure = None
        self._blocked_until = None


class TokenCooldown:
    """Server-imposed pause after a token-limit (HTTP 429) response."""

    def __init__(
        self,
        *,
        default_timeout: float = 30 * 60,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.default_timeout = default_timeout
        self._clock = clock
        self.resume_at: datetime | None = None

    def activate(self, resume_at: datetime | None = None) -> datetime:
        self.resume_at = resume_at or self._clock() + timedelta(seconds=self.default_timeout)
        logger.info(f"Token cooldown active until {self.resume_at.isoformat()}")
        return self.resume_at

    def active(self) -> bool:
        if self.resume_at is None:
            return False
        if self.resume_at <= self._clock():
            self.resume_at = None
            return False
        return True

    def remaining_seconds(self) -> float:
        if not self.active():
            return 0.0
        return (self.resume_at - self._clock()).total_seconds()  # type: ignore[operator]

    def clear(self) -> None:
        self.resume_at = None
