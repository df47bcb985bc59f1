#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Any, Dict, Optional


class FeedError(Exception):
    """Base class for every error raised by the prefetcher."""


class FeedStatusError(FeedError):
    """Raised when the API answers with anything other than HTTP 200.

    Attributes:
        feed_name: Feed that was requested.
        status: HTTP status code received.
        body: Response body, kept for diagnostics.
    """

    def __init__(self, feed_name: str, status: int, body: str = ""):
        super().__init__(f"HTTP {status} fetching {feed_name}")
        self.feed_name = feed_name
        self.status = status
        self.body = body


class FeedFetchError(FeedError):
    """Raised when a feed could not be fetched after the last permitted attempt.

    Attributes:
        feed_name: Feed that was requested.
        attempts: Number of network attempts made.
        last_error: The error raised by the final attempt.
    """

    def __init__(self, feed_name: str, last_error: BaseException, attempts: int):
        super().__init__(f"Failed getting feed {feed_name} after {attempts} attempt(s): {last_error!r}")
        self.feed_name = feed_name
        self.last_error = last_error
        self.attempts = attempts


class FeedParseError(FeedError):
    """Raised when a response body is not valid JSON. Never retried."""

    def __init__(self, feed_name: str, reason: str):
        super().__init__(f"Could not parse {feed_name} response as JSON: {reason}")
        self.feed_name = feed_name
        self.reason = reason


class CacheWriteError(FeedError):
    """Raised by the cache store when an entry cannot be written."""

    def __init__(self, file_name: str, cause: OSError):
        super().__init__(f"Could not write cache file {file_name}: {cause}")
        self.file_name = file_name
        self.cause = cause


class JobTimeoutError(FeedError):
    """Raised into a queued job's future when the queue cancelled it on timeout."""

    def __init__(self, job_name: str, timeout: float):
        super().__init__(f"Job {job_name} timed out after {timeout:g}s")
        self.job_name = job_name
        self.timeout = timeout


class PrefetchError(FeedError):
    """Orchestration-level failure (a root feed or home highlights).

    Attributes:
        feed_name: Feed whose failure aborted or escalated the prefetch.
        tree: Feeds collected before the failure was raised, if any.
    """

    def __init__(self, message: str, feed_name: str, tree: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.feed_name = feed_name
        self.tree = tree or {}

__all__ = [
    "FeedError",
    "FeedStatusError",
    "FeedFetchError",
    "FeedParseError",
    "CacheWriteError",
    "JobTimeoutError",
    "PrefetchError",
]
