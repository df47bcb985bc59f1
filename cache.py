#!/usr/bin/env python3
"""
File-per-key response cache.

Each cache entry is the raw JSON body of one feed response stored as a flat
UTF-8 text file in a single directory. The file's modification time is the
entry's timestamp; entries not strictly newer than the configured cutoff
are ignored. Reads never raise: anything that goes wrong is a miss. Writes
replace the file atomically and raise CacheWriteError on failure.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional
import json
import os
import tempfile

from config import get_logger
from errors import CacheWriteError
from models import CacheEntry
from utils import stringify_param

logger = get_logger("cache")

# Parameters whose value changes the identity of a cached response, in key order
IMPORTANT_PARAMS = ("availability", "initial_child_count", "lang", "live")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def _to_microseconds(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // _MICROSECOND


class CacheStore:
    """Flat-directory cache keyed by feed name and important parameters."""

    def __init__(
        self,
        cache_dir: str,
        expire_time: Optional[datetime] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize the store.

        Args:
            cache_dir: Directory holding the cache files (created on first write)
            expire_time: Absolute cutoff; entries must be strictly newer
            ttl_seconds: Rolling cutoff (now - ttl), used when expire_time is None
            clock: Source of "now" for the rolling cutoff
        """
        self.cache_dir = cache_dir
        self.expire_time = expire_time
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def cutoff(self) -> Optional[datetime]:
        """Current expiry cutoff, or None when entries never expire."""
        if self.expire_time is not None:
            return self.expire_time
        if self.ttl_seconds is not None:
            return self._clock() - timedelta(seconds=self.ttl_seconds)
        return None

    @staticmethod
    def file_name(feed_name: str, params: Mapping[str, Any]) -> str:
        """Derive the cache key (also the file name) for a request.

        Only IMPORTANT_PARAMS contribute, always in the same order, so the
        key ignores other parameters and insertion order.
        """
        parts = []
        for name in IMPORTANT_PARAMS:
            value = params.get(name)
            if value is not None:
                parts.append(f"{name}_{stringify_param(value)}")
        return feed_name.replace("/", "_") + "_" + "_".join(parts)

    def path_for(self, feed_name: str, params: Mapping[str, Any]) -> str:
        return os.path.join(self.cache_dir, self.file_name(feed_name, params))

    def is_fresh(self, modified: datetime) -> bool:
        cutoff = self.cutoff()
        if cutoff is None:
            return True
        return _to_microseconds(modified) > _to_microseconds(cutoff)

    def read(self, feed_name: str, params: Mapping[str, Any]) -> Optional[CacheEntry]:
        """Return a fresh, parseable entry or None."""
        key = self.file_name(feed_name, params)
        file_path = os.path.join(self.cache_dir, key)
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                body = f.read()
                stat = os.fstat(f.fileno())
            data = json.loads(body)
        except (OSError, UnicodeDecodeError, ValueError, RecursionError) as e:
            logger.debug(f"Cache miss for {key}: {e.__class__.__name__}")
            return None

        modified = _EPOCH + timedelta(microseconds=stat.st_mtime_ns // 1000)
        if not self.is_fresh(modified):
            logger.debug(f"Cache expired for {key} (modified {modified.isoformat()})")
            return None

        logger.debug(f"Cache hit for {key}")
        return CacheEntry(key=key, body=body, modified=modified, data=data)

    def write(self, feed_name: str, params: Mapping[str, Any], body: str) -> str:
        """Atomically replace the entry for a request and return its path.

        Raises:
            CacheWriteError: if the directory or file cannot be written
        """
        key = self.file_name(feed_name, params)
        file_path = os.path.join(self.cache_dir, key)
        tmp_path = None
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self.cache_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
            os.replace(tmp_path, file_path)
            tmp_path = None
        except OSError as e:
            raise CacheWriteError(key, e) from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
        logger.debug(f"Cached {key}")
        return file_path
