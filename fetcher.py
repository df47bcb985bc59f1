#!/usr/bin/env python3
"""
JSON feed fetcher.

This module fetches feed documents from the content API. Each request is
answered from the on-disk cache when a fresh entry exists; otherwise it is
queued on a bounded work queue and fetched with retry/backoff, and the
successful body is written through to the cache.
"""

from asyncio import TimeoutError
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode
import json

from aiohttp import ClientSession, ClientTimeout, TCPConnector

from cache import CacheStore
from config import config, get_logger
from errors import CacheWriteError, FeedError, FeedFetchError, FeedParseError, FeedStatusError
from models import FeedRequest, FeedResult
from telemetry import init_telemetry, trace_span
from utils import BackoffPolicy, stringify_param, summarize_proxy
from workqueue import QueueJob, WorkQueue

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("feed-prefetcher-fetcher")

# HTTP status codes
HTTP_OK = 200


class FeedFetcher:
    """Fetch feeds through the cache, the work queue and the backoff policy."""

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        cache: Optional[CacheStore] = None,
        queue: Optional[WorkQueue] = None,
        backoff: Optional[BackoffPolicy] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        proxy_url: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.base_url = base_url if base_url is not None else config.API_BASE_URL
        self.proxy_url = proxy_url if proxy_url is not None else config.PROXY_URL
        self.user_agent = user_agent or config.USER_AGENT
        self.default_params: Dict[str, Any] = {
            'availability': 'available',
            'lang': 'en',
            'rights': 'web',
            'api_key': api_key if api_key is not None else config.API_KEY,
        }
        self.cache = cache or CacheStore(
            config.CACHE_DIR,
            expire_time=config.CACHE_EXPIRE_TIME,
            ttl_seconds=config.CACHE_TTL_SECONDS,
        )
        self.queue = queue or WorkQueue(
            concurrency=config.QUEUE_CONCURRENCY,
            timeout=config.QUEUE_TIMEOUT,
            cancel_on_timeout=config.QUEUE_CANCEL_ON_TIMEOUT,
            on_timeout=self._on_job_timeout,
            on_error=self._on_job_error,
        )
        self.backoff = backoff or BackoffPolicy(
            max_retries=config.MAX_RETRIES,
            factor=config.RETRY_FACTOR,
            min_delay=config.RETRY_MIN_TIMEOUT,
            max_delay=config.RETRY_MAX_TIMEOUT,
        )
        self._session = session
        self._owns_session = session is None
        self.cache_write_failures: List[CacheWriteError] = []
        if self.proxy_url:
            logger.info("Fetching feeds via proxy %s", summarize_proxy(self.proxy_url))

    async def __aenter__(self) -> "FeedFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_session(self) -> ClientSession:
        """Return the HTTP session, creating one sized to the queue on first use."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                connector=TCPConnector(limit=self.queue.concurrency),
                headers={'User-Agent': self.user_agent},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Cancel outstanding queue work and close the session if we created it."""
        await self.queue.close()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def _on_job_timeout(self, job: QueueJob) -> None:
        logger.warning(f"Feed job {job} timed out after {self.queue.timeout:g}s")

    def _on_job_error(self, job: QueueJob, error: BaseException) -> None:
        logger.debug(f"Feed job {job} failed: {error!r}")

    def merge_params(self, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Overlay caller params on the defaults; caller values win."""
        merged = dict(self.default_params)
        merged.update(params or {})
        return merged

    def build_url(self, feed_name: str, params: Mapping[str, Any]) -> str:
        query = urlencode([(k, stringify_param(v)) for k, v in params.items() if v is not None])
        return f"{self.base_url}{feed_name}.json?{query}"

    @trace_span(
        "feed.request",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed_name, params=None: {"feed.name": str(feed_name)},
    )
    async def request(self, feed_name: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Return the parsed feed, from cache when fresh, otherwise from the API.

        Raises:
            FeedFetchError: the last attempt failed or the error was not retryable
            FeedParseError: the API answered 200 with a body that is not JSON
            JobTimeoutError: the work queue cancelled the job on timeout
        """
        request = FeedRequest(feed_name, self.merge_params(params))

        cached = self.cache.read(request.feed_name, request.params)
        if cached is not None:
            logger.debug(f"Serving {request.feed_name} from cache")
            return cached.data

        return await self.queue.submit(request.feed_name, lambda: self._download(request))

    async def fetch(self, feed_name: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Same as request(), logging failures before re-raising them unchanged."""
        try:
            return await self.request(feed_name, params)
        except FeedError as e:
            logger.error(f"Failed to get feed {feed_name}: {e}")
            raise

    async def fetch_result(self, feed_name: str, params: Optional[Mapping[str, Any]] = None) -> FeedResult:
        """Fetch a feed and wrap the outcome instead of raising feed errors."""
        try:
            data = await self.fetch(feed_name, params)
        except FeedError as e:
            return FeedResult(feed_name=feed_name, error=e)
        return FeedResult(feed_name=feed_name, data=data)

    async def _download(self, request: FeedRequest) -> Any:
        """Queued job: run the attempt sequence, parse and cache the body."""
        body = await self._fetch_with_retries(request)

        try:
            data = json.loads(body)
        except (ValueError, RecursionError) as e:
            logger.error(f"Could not parse {request.feed_name} response as JSON: {e}")
            raise FeedParseError(request.feed_name, str(e)) from e

        try:
            self.cache.write(request.feed_name, request.params, body)
        except CacheWriteError as e:
            # The fresh response is still good; record the failure and carry on
            self.cache_write_failures.append(e)
            logger.warning(f"Cache write failed for {request.feed_name}: {e}")
        return data

    async def _fetch_with_retries(self, request: FeedRequest) -> str:
        """Attempt the request until it succeeds or the backoff policy gives up."""
        url = self.build_url(request.feed_name, request.params)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._attempt(request.feed_name, url, self.backoff.delay_for_attempt(attempt))
            except Exception as e:
                if not self.backoff.should_retry(attempt, e):
                    logger.warning(
                        "Failed getting feed %s after %d/%d attempt(s): %s",
                        request.feed_name,
                        attempt,
                        self.backoff.max_retries,
                        self._describe_error(e),
                    )
                    raise FeedFetchError(request.feed_name, e, attempt) from e
                logger.info(
                    "Retrying %s (attempt %d/%d failed: %s)",
                    request.feed_name,
                    attempt,
                    self.backoff.max_retries,
                    self._describe_error(e),
                )
                await self.backoff.sleep_for_attempt(attempt)

    async def _attempt(self, feed_name: str, url: str, timeout_seconds: float) -> str:
        """One network attempt; the attempt's backoff delay is its timeout."""
        request_kwargs: Dict[str, Any] = {
            'headers': {'User-Agent': self.user_agent},
            'timeout': ClientTimeout(total=timeout_seconds),
        }
        if self.proxy_url:
            request_kwargs['proxy'] = self.proxy_url
        async with self._get_session().get(url, **request_kwargs) as response:
            body = await response.text()
            if response.status != HTTP_OK:
                raise FeedStatusError(feed_name, response.status, body)
            return body

    def _describe_error(self, error: BaseException) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        if isinstance(error, TimeoutError):
            return f"{error.__class__.__name__} (timed out)"
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None and getattr(os_error, 'errno', None) is not None:
            parts.append(f"errno={os_error.errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
