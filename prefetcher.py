#!/usr/bin/env python3
"""
Prefetch orchestration.

Fetches the root ``categories`` and ``channels`` feeds, then every feed that
hangs off them plus the home highlights, and collects the successful ones
into a single tree keyed by feed path.
"""

from asyncio import gather
from typing import Any, Dict, List, Optional, Tuple

from config import get_logger
from errors import PrefetchError
from fetcher import FeedFetcher
from models import FeedResult, PrefetchTree
from telemetry import trace_span

logger = get_logger("prefetcher")

HOME_HIGHLIGHTS = "home/highlights"


class PrefetchOrchestrator:
    """Eagerly load the known feed graph through a FeedFetcher."""

    def __init__(self, fetcher: FeedFetcher) -> None:
        self.fetcher = fetcher
        self.results: Dict[str, FeedResult] = {}

    async def _fetch_roots(self) -> Tuple[Any, Any]:
        """Fetch both root feeds; either failing aborts the prefetch."""
        categories, channels = await gather(
            self.fetcher.fetch_result("categories"),
            self.fetcher.fetch_result("channels"),
        )
        for result in (categories, channels):
            if not result.ok:
                raise PrefetchError(
                    f"Couldn't load root feed {result.feed_name}: {result.error}",
                    result.feed_name,
                ) from result.error
        return categories.data, channels.data

    def _items(self, feed_name: str, payload: Any) -> List[Dict[str, Any]]:
        items = payload.get(feed_name) if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise PrefetchError(f"Root feed {feed_name} has no '{feed_name}' list", feed_name)
        valid = []
        for item in items:
            if isinstance(item, dict) and item.get("id") not in (None, ""):
                valid.append(item)
            else:
                logger.warning(f"Skipping {feed_name} entry without an id: {item!r}")
        return valid

    def derived_feeds(self, categories: Any, channels: Any) -> List[Tuple[str, Optional[Dict[str, Any]]]]:
        """List (feed path, params) for every feed that depends on the roots."""
        feeds: List[Tuple[str, Optional[Dict[str, Any]]]] = []
        for category in self._items("categories", categories):
            feeds.append((f"categories/{category['id']}/highlights", None))
            feeds.append((f"categories/{category['id']}/programmes", None))
        for channel in self._items("channels", channels):
            feeds.append((f"channels/{channel['id']}/highlights", {"live": True}))
        feeds.append((HOME_HIGHLIGHTS, None))
        return feeds

    @trace_span("prefetch.all", tracer_name="prefetcher")
    async def prefetch_all(self) -> PrefetchTree:
        """Fetch the whole feed graph and return the successful feeds by path.

        Raises:
            PrefetchError: a root feed failed, or home highlights failed (the
                latter only after every other feed has settled)
        """
        self.results = {}
        categories, channels = await self._fetch_roots()
        feeds = self.derived_feeds(categories, channels)
        logger.info(f"Prefetching {len(feeds)} derived feeds")

        results = await gather(*(self.fetcher.fetch_result(name, params) for name, params in feeds))

        tree: PrefetchTree = {}
        for (name, _), result in zip(feeds, results):
            self.results[name] = result
            if result.ok:
                tree[name] = result.data
            else:
                logger.warning(f"Leaving {name} out of the prefetch tree: {result.error}")

        home = self.results[HOME_HIGHLIGHTS]
        if not home.ok:
            raise PrefetchError(f"Couldn't load {HOME_HIGHLIGHTS} feed: {home.error}", HOME_HIGHLIGHTS, tree) from home.error

        failed = sum(1 for result in results if not result.ok)
        logger.info(f"Prefetched {len(tree)} feeds ({failed} failed)")
        return tree
