"""
Client-side throttle for Bedrock InvokeModel calls.

A token bucket: tokens accrue at ``requests_per_second`` up to
``burst_size``, and each model invocation spends one. Keeping the
question loop under the account quota means fewer ThrottlingException
round trips through the retry policy.

Defaults are 2 requests/second with a burst of 1.

Usage:
    from waffle.rate_limiter import RateLimitConfig, TokenBucketRateLimiter

    limiter = TokenBucketRateLimiter(RateLimitConfig(requests_per_second=2.0))
    if limiter.acquire(timeout=60.0, cancel_event=cancel_event):
        response = runtime.invoke_model(...)
"""

import threading
import time
from dataclasses import dataclass

from waffle.errors import OperationCancelledError
from waffle.logging_config import get_logger, log_with_context

logger = get_logger(__name__)

# Longest single sleep while waiting, so a set cancel event is seen quickly
_POLL_INTERVAL = 0.05


@dataclass
class RateLimitConfig:
    """
    Bucket parameters.

    Attributes:
        requests_per_second: Refill rate
        burst_size: Bucket capacity
    """

    requests_per_second: float = 2.0
    burst_size: int = 1


class TokenBucketRateLimiter:
    """
    Thread-safe token bucket.

    The bucket starts full. ``acquire`` blocks until a token is free, the
    timeout passes or the cancel event is set; ``try_acquire`` never blocks.

    Attributes:
        rate: Tokens added per second
        capacity: Bucket size
        tokens: Tokens currently held (fractional between refills)
    """

    def __init__(self, config: RateLimitConfig | None = None) -> None:
        """
        Args:
            config: Bucket parameters (defaults to 2 req/s, burst 1)

        Raises:
            ValueError: If the rate is not positive or the burst is below 1
        """
        config = config or RateLimitConfig()
        if config.requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if config.burst_size < 1:
            raise ValueError("burst_size must be at least 1")

        self.rate: float = float(config.requests_per_second)
        self.capacity: float = float(config.burst_size)
        self.tokens: float = self.capacity
        self._refilled_at: float = time.monotonic()
        self._lock = threading.Lock()

        log_with_context(
            logger,
            "debug",
            "Rate limiter ready",
            requests_per_second=self.rate,
            burst_size=config.burst_size,
        )

    def _top_up(self) -> None:
        # Caller holds the lock
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self._refilled_at) * self.rate)
        self._refilled_at = now

    def _shortfall(self) -> float:
        # Caller holds the lock; seconds until one whole token exists
        return 0.0 if self.tokens >= 1.0 else (1.0 - self.tokens) / self.rate

    def _take(self) -> float:
        """Spend a token if one is available; return 0.0, else the wait."""
        with self._lock:
            self._top_up()
            wait = self._shortfall()
            if wait == 0.0:
                self.tokens -= 1.0
            return wait

    def acquire(
        self,
        timeout: float = 60.0,
        cancel_event: threading.Event | None = None,
    ) -> bool:
        """
        Block until a token is spent.

        Args:
            timeout: Seconds to wait at most
            cancel_event: Abandons the wait when set

        Returns:
            False when the next token would arrive after the timeout

        Raises:
            OperationCancelledError: ``cancel_event`` was set
        """
        deadline = time.monotonic() + timeout
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("rate limiter wait")

            wait = self._take()
            if wait == 0.0:
                return True
            if time.monotonic() + wait > deadline:
                log_with_context(logger, "warning", "Rate limiter timed out", timeout=timeout, wait_time=wait)
                return False

            pause = min(wait, _POLL_INTERVAL)
            if cancel_event is None:
                time.sleep(pause)
            else:
                _ = cancel_event.wait(pause)

    def try_acquire(self) -> bool:
        """Spend a token only if one is available right now."""
        return self._take() == 0.0

    def get_available_tokens(self) -> float:
        with self._lock:
            self._top_up()
            return self.tokens

    def get_wait_time(self) -> float:
        """Seconds until a token is available; 0.0 when one is."""
        with self._lock:
            self._top_up()
            return self._shortfall()
