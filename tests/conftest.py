import json
import os
from urllib.parse import parse_qs, urlsplit

# Keep test runs free of exporters and instrumentation side effects
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest

from cache import CacheStore
from fetcher import FeedFetcher
from utils import BackoffPolicy
from workqueue import WorkQueue

BASE_URL = "https://api.example.test/ibl/v1/"


class FakeResponse:
    """Minimal stand-in for aiohttp's ClientResponse used as a context manager."""

    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """Routes GET requests by feed name to scripted outcomes.

    Each route maps to a list of outcomes consumed in order; the last one
    repeats. An outcome is an exception instance (raised), a (status, body)
    tuple, or any other object (served as a 200 JSON body).
    """

    def __init__(self, routes=None):
        self.routes = {name: list(outcomes) for name, outcomes in (routes or {}).items()}
        self.calls = []
        self.closed = False

    @staticmethod
    def feed_name(url):
        path = urlsplit(url).path
        return path[len(urlsplit(BASE_URL).path):].rsplit(".json", 1)[0]

    @staticmethod
    def query(url):
        return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}

    def called_feeds(self):
        return [self.feed_name(url) for url, _ in self.calls]

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        outcomes = self.routes.get(self.feed_name(url))
        if not outcomes:
            return FakeResponse(404, "")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, tuple):
            return FakeResponse(*outcome)
        return FakeResponse(200, json.dumps(outcome))

    async def close(self):
        self.closed = True


class DisabledSession(FakeSession):
    """Session that fails the test if anything reaches the transport."""

    def get(self, url, **kwargs):
        raise AssertionError(f"unexpected network call to {url}")


@pytest.fixture
def cache_store(tmp_path):
    return CacheStore(str(tmp_path / "cache"), ttl_seconds=3600)


@pytest.fixture
def make_fetcher(cache_store):
    """Build a FeedFetcher wired to a fake session and instant backoff."""

    def _make(session=None, routes=None, cache=None, backoff=None, queue=None, proxy_url=""):
        return FeedFetcher(
            session=session if session is not None else FakeSession(routes),
            cache=cache or cache_store,
            queue=queue or WorkQueue(concurrency=4, timeout=5),
            backoff=backoff or BackoffPolicy(max_retries=3, factor=1.5, min_delay=0, max_delay=0),
            base_url=BASE_URL,
            api_key="test-key",
            proxy_url=proxy_url,
            user_agent="FeedPrefetcher tests",
        )

    return _make
