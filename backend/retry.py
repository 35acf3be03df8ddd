"""
Retry Utilities with Exponential Backoff

Provides backoff policies and helpers for resilient network operations:
HTTP snapshot requests and the streaming connection's reconnect schedule.
"""

import asyncio
import logging
import random
import time
from typing import Callable, Optional
import aiohttp

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[tuple] = None,
        retryable_status_codes: Optional[set] = None,
    ):
        """
        Args:
            max_retries: Maximum number of retry attempts (0 = no retries)
            base_delay: Initial delay in seconds
            max_delay: Maximum delay cap in seconds
            exponential_base: Base for exponential backoff (2.0 = 1s, 2s, 4s, 8s...)
            jitter: Add random jitter to prevent thundering herd
            retryable_exceptions: Tuple of exception types to retry on
            retryable_status_codes: Set of HTTP status codes to retry on
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or (
            aiohttp.ClientError,
            asyncio.TimeoutError,
            ConnectionError,
            OSError,
        )
        self.retryable_status_codes = retryable_status_codes or {
            408,  # Request Timeout
            429,  # Too Many Requests
            500,  # Internal Server Error
            502,  # Bad Gateway
            503,  # Service Unavailable
            504,  # Gateway Timeout
        }


# Snapshot requests: a few quick retries before initialization gives up
HTTP_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    base_delay=1.0,
    max_delay=30.0,
)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for retry attempt (0-indexed) with exponential backoff and jitter."""
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add up to 25% jitter
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0.1, delay)


class BackoffPolicy:
    """
    Deterministic reconnect schedule.

    Delay for attempt k (1-indexed) is min(max_delay, base_delay * 2^(k-1)).
    No jitter: the schedule is part of the connection contract and is asserted
    in tests.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 10,
        exponential_base: float = 2.0,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.exponential_base = exponential_base

    def delay_for(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError(f"attempt is 1-indexed, got {attempt}")
        return min(self.max_delay, self.base_delay * (self.exponential_base ** (attempt - 1)))

    def exhausted(self, attempt: int) -> bool:
        """True once the attempt counter exceeds the configured maximum"""
        return attempt > self.max_attempts

    def schedule(self) -> list[float]:
        return [self.delay_for(k) for k in range(1, self.max_attempts + 1)]


RECONNECT_BACKOFF = BackoffPolicy(base_delay=1.0, max_delay=30.0, max_attempts=10)


async def retry_http_request(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    config: Optional[RetryConfig] = None,
    **kwargs,
) -> aiohttp.ClientResponse:
    """
    Execute HTTP request with automatic retry.

    Args:
        session: aiohttp ClientSession
        method: HTTP method (GET, POST, etc.)
        url: Request URL
        config: RetryConfig (defaults to HTTP_RETRY_CONFIG)
        **kwargs: Additional arguments passed to session.request()

    Returns:
        aiohttp.ClientResponse

    Example:
        async with aiohttp.ClientSession() as session:
            resp = await retry_http_request(session, "GET", url, params=params)
            data = await resp.json()
    """
    if config is None:
        config = HTTP_RETRY_CONFIG

    last_exception = None

    for attempt in range(config.max_retries + 1):
        try:
            resp = await session.request(method, url, **kwargs)

            # Check if status code should be retried
            if resp.status in config.retryable_status_codes:
                if attempt < config.max_retries:
                    delay = calculate_delay(attempt, config)
                    logger.warning(
                        f"[Retry] HTTP {method} {url} returned {resp.status} "
                        f"(attempt {attempt + 1}/{config.max_retries + 1}). Retrying in {delay:.1f}s..."
                    )
                    resp.close()
                    await asyncio.sleep(delay)
                    continue

            return resp

        except config.retryable_exceptions as e:
            last_exception = e

            if attempt < config.max_retries:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    f"[Retry] HTTP {method} {url} failed (attempt {attempt + 1}/{config.max_retries + 1}): "
                    f"{type(e).__name__}: {e}. Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"[Retry] HTTP {method} {url} failed after {config.max_retries + 1} attempts: "
                    f"{type(e).__name__}: {e}"
                )
                raise

    if last_exception:
        raise last_exception


class ConnectionHealthMonitor:
    """
    Tracks connection health for named streams (e.g. "binance_ws:BTCUSDT:5m").

    Observational only: records last successful message time, connection
    state and error counts for the status API.
    """

    def __init__(self, stale_threshold_sec: float = 120.0, clock: Callable[[], float] = time.time):
        """
        Args:
            stale_threshold_sec: Consider connection stale after this many seconds
                                 without successful operations
        """
        self.stale_threshold = stale_threshold_sec
        self._clock = clock
        self._last_success: dict[str, float] = {}
        self._connected: dict[str, bool] = {}
        self._error_counts: dict[str, int] = {}

    def register_connection(self, name: str):
        """Register a connection to monitor."""
        self._last_success[name] = self._clock()
        self._connected[name] = False
        self._error_counts[name] = 0

    def mark_success(self, name: str):
        """Mark successful operation for a connection."""
        self._last_success[name] = self._clock()
        self._connected[name] = True
        self._error_counts[name] = 0

    def mark_error(self, name: str):
        """Mark failed operation for a connection."""
        self._error_counts[name] = self._error_counts.get(name, 0) + 1

    def mark_disconnected(self, name: str):
        """Mark connection as disconnected."""
        self._connected[name] = False

    def is_healthy(self, name: str) -> bool:
        """Check if a connection is healthy."""
        if name not in self._last_success:
            return False

        if not self._connected.get(name, False):
            return False

        age = self._clock() - self._last_success[name]
        return age < self.stale_threshold

    def get_status(self) -> dict:
        """Get status of all monitored connections."""
        now = self._clock()
        status = {}

        for name in self._last_success:
            age = now - self._last_success[name]
            status[name] = {
                "connected": self._connected.get(name, False),
                "last_success_age_sec": round(age, 1),
                "is_healthy": self.is_healthy(name),
                "error_count": self._error_counts.get(name, 0),
            }

        return status
