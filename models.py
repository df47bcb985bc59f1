#!/usr/bin/env python3
"""
Data model for the prefetcher.

Plain value objects passed between the cache store, the work queue,
the fetcher and the prefetch orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from utils import normalize_feed_name


@dataclass(frozen=True)
class FeedRequest:
    """One logical feed request: a hierarchical feed name plus query params."""

    feed_name: str
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # frozen: bypass __setattr__ to store the normalized, read-only views
        object.__setattr__(self, "feed_name", normalize_feed_name(self.feed_name))
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))


@dataclass(frozen=True)
class CacheEntry:
    """A cached response body with the file's modification time."""

    key: str
    body: str
    modified: datetime
    data: Any = None


@dataclass
class FeedResult:
    """Outcome of one fetch: parsed data or the error that prevented it."""

    feed_name: str
    data: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# Feed path -> parsed feed, successful fetches only
PrefetchTree = Dict[str, Any]
