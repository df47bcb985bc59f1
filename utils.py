#!/usr/bin/env python3
"""
Utility classes and functions for the feed prefetcher.

This module contains shared utilities used by the fetcher, the cache store
and the orchestrator, including the retry backoff policy, error
classification and small normalization helpers.
"""

from asyncio import sleep, TimeoutError
from typing import Any, List, Optional
import re
from urllib.parse import urlparse

from aiohttp import ClientError

from config import get_logger
from errors import FeedStatusError

# Module-specific logger
logger = get_logger("utils")


def is_transient_error(error: BaseException) -> bool:
    """Return True for failures worth retrying: network errors, timeouts and non-200 statuses."""
    return isinstance(error, (ClientError, TimeoutError, FeedStatusError))


class BackoffPolicy:
    """Deterministic retry schedule with exponential growth and a ceiling.

    Each delay serves twice: as the timeout of the attempt it belongs to and
    as the pause before the following attempt. There is no jitter.
    """

    def __init__(self, max_retries: int = 3, factor: float = 1.5, min_delay: float = 2.0, max_delay: float = 5.0):
        """Initialize the backoff policy.

        Args:
            max_retries: Total number of network attempts allowed
            factor: Growth factor between consecutive delays
            min_delay: Delay (seconds) for the first attempt
            max_delay: Upper bound (seconds) for any delay
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.factor = factor
        self.min_delay = min_delay
        self.max_delay = max_delay

    def delays(self) -> List[float]:
        """Return the full schedule, one delay per attempt."""
        return [min(self.max_delay, self.min_delay * (self.factor ** i)) for i in range(self.max_retries)]

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay for a 1-based attempt number, clamped to the schedule bounds."""
        schedule = self.delays()
        index = min(max(attempt, 1), len(schedule)) - 1
        return schedule[index]

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Decide whether another attempt follows the given failed one.

        The final attempt is never retried so its error is the one surfaced.
        """
        return attempt < self.max_retries and is_transient_error(error)

    async def sleep_for_attempt(self, attempt: int) -> None:
        """Sleep for the delay that follows the given failed attempt."""
        delay = self.delay_for_attempt(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def normalize_feed_name(feed_name: str) -> str:
    """Strip surrounding slashes/whitespace and collapse repeated slashes.

    >>> normalize_feed_name("/categories//c1/highlights/")
    'categories/c1/highlights'
    """
    if not isinstance(feed_name, str):
        raise TypeError(f"feed name must be a string, got {type(feed_name).__name__}")
    name = re.sub(r'/{2,}', '/', feed_name.strip()).strip('/')
    if not name:
        raise ValueError("feed name must not be empty")
    return name


def stringify_param(value: Any) -> str:
    """Render a query parameter value; booleans use the API's lowercase form."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def summarize_proxy(proxy_url: Optional[str]) -> Optional[str]:
    """Provide a redacted proxy identifier for logging."""
    if not proxy_url:
        return None
    try:
        parsed = urlparse(proxy_url)
        if parsed.scheme and parsed.hostname:
            host = parsed.hostname
            if parsed.port:
                host = f"{host}:{parsed.port}"
            return f"{parsed.scheme}://{host}"
    except ValueError:
        return proxy_url
    return proxy_url


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1m 5.2s")
    """
    if seconds < 0:
        return "0s"

    minutes = int(seconds // 60)
    secs = seconds - minutes * 60
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"
