"""Per-platform protection for outbound publish calls.

Each platform gets one PlatformGuard. A call through the guard takes a
concurrency slot, waits for a throttle token, checks the platform's
breaker, then runs with retries:

  slot      at most ``max_concurrent`` calls in flight to the platform
  throttle  token bucket spacing requests to the platform API
  breaker   stops calling a platform that keeps failing and lets one
            trial call through after ``reset_timeout``
  retry     exponential backoff on transient errors, honoring the
            platform's ``retry_after`` hint

Guards never share state, so an outage on one network does not slow the
others. PostRateTracker is a separate concern: it counts successful
publishes for the hourly and daily ceilings in the capability table.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, TypeVar

from socialcast.capabilities import Platform
from socialcast.driver import PlatformAPIError
from socialcast.models import utcnow

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class GuardConfig:
    """Tuning shared by every platform guard; the ``resilience:`` config section."""
    requests_per_second: float = 1.0
    burst: int = 10
    max_concurrent: int = 2
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True


class ThrottleExceeded(Exception):
    def __init__(self, platform: Platform, wait: float) -> None:
        self.platform = platform
        self.wait = wait
        super().__init__(f"{platform.value} request budget spent, next token in {wait:.1f}s")


class CircuitOpenError(Exception):
    def __init__(self, platform: Platform, retry_in: float) -> None:
        self.platform = platform
        self.retry_in = retry_in
        super().__init__(
            f"{platform.value} is failing, calls suspended for another {retry_in:.0f}s"
        )


class RetriesExhausted(Exception):
    def __init__(self, attempts: int, last_error: Exception) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


def is_transient(exc: Exception) -> bool:
    """Timeouts, dropped connections, 429 and 5xx are worth another try."""
    if isinstance(exc, PlatformAPIError):
        return exc.transient
    return isinstance(exc, (ConnectionError, TimeoutError))


def is_outage(exc: Exception) -> bool:
    """Whether a failed call says the platform itself is unhealthy."""
    return isinstance(exc, RetriesExhausted) or is_transient(exc)


class TokenBucket:
    """Thread-safe token bucket. A blocked caller reserves its token before sleeping."""

    def __init__(
        self,
        platform: Platform,
        rate: float,
        capacity: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.platform = platform
        self._rate = rate
        self._capacity = capacity
        self._level = capacity
        self._clock = clock
        self._sleep = sleep
        self._stamp = clock()
        self._lock = threading.Lock()

    def _top_up(self) -> None:
        now = self._clock()
        self._level = min(self._capacity, self._level + (now - self._stamp) * self._rate)
        self._stamp = now

    def take(self, block: bool = True) -> None:
        with self._lock:
            self._top_up()
            wait = 0.0 if self._level >= 1 else (1 - self._level) / self._rate
            if wait and not block:
                raise ThrottleExceeded(self.platform, wait)
            # Going negative queues later callers behind this one.
            self._level -= 1
        if wait:
            logger.debug("Throttling %s for %.2fs", self.platform.value, wait)
            self._sleep(wait)

    @property
    def level(self) -> float:
        with self._lock:
            self._top_up()
            return self._level


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Counts consecutive outages for one platform.

    ``failure_threshold`` outages in a row open the circuit; after
    ``reset_timeout`` seconds one trial call is let through and its
    result closes or re-opens it.
    """

    def __init__(
        self,
        platform: Platform,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.platform = platform
        self._threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_running = False
        self._lock = threading.Lock()

    def _peek(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self._reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_running = False
        return self._state

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._peek()

    @property
    def failures(self) -> int:
        return self._failures

    def allow(self) -> None:
        """Raise CircuitOpenError unless a call may go out now."""
        with self._lock:
            state = self._peek()
            if state == CircuitState.CLOSED:
                return
            if state == CircuitState.HALF_OPEN and not self._trial_running:
                self._trial_running = True
                return
            retry_in = max(0.0, self._opened_at + self._reset_timeout - self._clock())
        raise CircuitOpenError(self.platform, retry_in)

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("%s recovered, closing circuit", self.platform.value)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._trial_running = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            tripped = self._state == CircuitState.HALF_OPEN or self._failures >= self._threshold
            if tripped:
                if self._state != CircuitState.OPEN:
                    logger.warning("Opening circuit for %s after %d failures",
                                   self.platform.value, self._failures)
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                self._trial_running = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._trial_running = False


def backoff_delay(attempt: int, config: GuardConfig, hint: float | None = None) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at ``max_delay``."""
    if hint:
        return min(float(hint), config.max_delay)
    delay = min(config.base_delay * 2 ** (attempt - 1), config.max_delay)
    if config.jitter:
        delay *= 0.5 + random.random() / 2
    return delay


class PlatformGuard:
    """Slot, throttle, breaker and retry for one platform."""

    def __init__(
        self,
        platform: Platform,
        config: GuardConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.platform = platform
        self.config = config or GuardConfig()
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(max(1, self.config.max_concurrent))
        self.throttle = TokenBucket(
            platform, self.config.requests_per_second, self.config.burst, clock, sleep,
        )
        self.breaker = CircuitBreaker(
            platform, self.config.failure_threshold, self.config.reset_timeout, clock,
        )

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``func`` under every protection; the last error propagates."""
        with self._slots:
            self.throttle.take()
            self.breaker.allow()
            try:
                result = self._attempts(func, *args, **kwargs)
            except Exception as exc:
                # A rejected request still proves the platform is reachable.
                if is_outage(exc):
                    self.breaker.record_failure()
                else:
                    self.breaker.record_success()
                raise
            self.breaker.record_success()
            return result

    def _attempts(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempts = max(1, self.config.max_attempts)
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                if not is_transient(exc):
                    raise
                if attempt >= attempts:
                    raise RetriesExhausted(attempts, exc) from exc
                delay = backoff_delay(attempt, self.config, getattr(exc, "retry_after", None))
                logger.info("%s attempt %d failed (%s), retrying in %.1fs",
                            self.platform.value, attempt, exc, delay)
            self._sleep(delay)
            attempt += 1


class PostRateTracker:
    """Counts recent successful publishes per (owner, platform)."""

    def __init__(self, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or utcnow
        self._events: dict[tuple[str, Platform], deque[datetime]] = defaultdict(deque)
        self._lock = threading.Lock()

    def record(self, owner_id: str, platform: Platform, at: datetime | None = None) -> None:
        with self._lock:
            self._events[(owner_id, platform)].append(at or self._now())

    def counts(self, owner_id: str, platform: Platform) -> tuple[int, int]:
        """Return (posts in the last hour, posts in the last day)."""
        now = self._now()
        hour_ago = now - timedelta(hours=1)
        with self._lock:
            events = self._events[(owner_id, platform)]
            while events and events[0] <= now - timedelta(days=1):
                events.popleft()
            return sum(1 for t in events if t > hour_ago), len(events)
