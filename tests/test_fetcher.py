import logging
import os

import pytest
from aiohttp import ClientConnectionError

from cache import CacheStore
from conftest import BASE_URL, DisabledSession, FakeSession
from errors import FeedFetchError, FeedParseError
from utils import BackoffPolicy


DEFAULTS = {"availability": "available", "lang": "en", "rights": "web", "api_key": "test-key"}


def test_merge_params_lets_caller_win(make_fetcher):
    fetcher = make_fetcher()

    merged = fetcher.merge_params({"lang": "cy", "live": True})

    assert merged == {**DEFAULTS, "lang": "cy", "live": True}
    assert fetcher.merge_params(None) == DEFAULTS


def test_build_url_encodes_query(make_fetcher):
    fetcher = make_fetcher()

    url = fetcher.build_url("channels/ch1/highlights", {"live": True, "lang": "en", "q": "a b"})

    assert url == BASE_URL + "channels/ch1/highlights.json?live=true&lang=en&q=a+b"


@pytest.mark.asyncio
async def test_cache_hit_skips_network_and_queue(make_fetcher, cache_store):
    os.makedirs(cache_store.cache_dir)
    cache_file = cache_store.path_for("categories", DEFAULTS)
    with open(cache_file, "w", encoding="utf-8") as f:
        f.write('{"categories":[{"id":"a1"}]}')
    session = DisabledSession()
    fetcher = make_fetcher(session=session)

    feed = await fetcher.fetch("categories", {})

    assert feed == {"categories": [{"id": "a1"}]}
    assert os.path.basename(cache_file) == "categories_availability_available_lang_en"
    assert fetcher.queue.errors == 0
    assert fetcher.queue.running == 0


@pytest.mark.asyncio
async def test_network_fetch_writes_through_to_cache(make_fetcher, cache_store):
    session = FakeSession({"channels": [{"channels": [{"id": "ch1"}]}]})
    fetcher = make_fetcher(session=session)

    first = await fetcher.fetch("channels")

    assert first == {"channels": [{"id": "ch1"}]}
    assert len(session.calls) == 1
    assert cache_store.read("channels", fetcher.merge_params()).data == first

    offline = make_fetcher(session=DisabledSession())
    assert await offline.fetch("channels") == first


@pytest.mark.asyncio
async def test_request_sends_merged_params_user_agent_and_proxy(make_fetcher):
    session = FakeSession({"channels/ch1/highlights": [{"elements": []}]})
    fetcher = make_fetcher(session=session, proxy_url="http://proxy.example:3128")

    await fetcher.fetch("channels/ch1/highlights", {"live": True})

    url, kwargs = session.calls[0]
    assert FakeSession.query(url) == {**DEFAULTS, "live": "true"}
    assert kwargs["proxy"] == "http://proxy.example:3128"
    assert kwargs["headers"]["User-Agent"] == "FeedPrefetcher tests"


@pytest.mark.asyncio
async def test_retry_exhaustion_surfaces_last_error(make_fetcher):
    errors = [ClientConnectionError(f"attempt {i}") for i in range(1, 4)]
    session = FakeSession({"categories": errors + [ClientConnectionError("unreachable")]})
    fetcher = make_fetcher(session=session)

    with pytest.raises(FeedFetchError) as excinfo:
        await fetcher.request("categories")

    assert len(session.calls) == 3
    assert excinfo.value.attempts == 3
    assert excinfo.value.last_error is errors[2]


@pytest.mark.asyncio
async def test_non_200_status_is_retried(make_fetcher):
    session = FakeSession({"channels": [(503, "busy"), (200, '{"channels": []}')]})
    fetcher = make_fetcher(session=session)

    assert await fetcher.request("channels") == {"channels": []}
    assert len(session.calls) == 2


@pytest.mark.asyncio
async def test_status_error_after_exhaustion_keeps_status(make_fetcher):
    session = FakeSession({"channels": [(500, "down")]})
    fetcher = make_fetcher(session=session)

    with pytest.raises(FeedFetchError) as excinfo:
        await fetcher.request("channels")

    assert excinfo.value.last_error.status == 500
    assert len(session.calls) == 3


@pytest.mark.asyncio
async def test_non_transient_error_is_not_retried(make_fetcher):
    session = FakeSession({"channels": [ValueError("broken transport")]})
    fetcher = make_fetcher(session=session)

    with pytest.raises(FeedFetchError) as excinfo:
        await fetcher.request("channels")

    assert excinfo.value.attempts == 1
    assert isinstance(excinfo.value.last_error, ValueError)


@pytest.mark.asyncio
async def test_malformed_json_fails_without_retry_or_caching(make_fetcher, cache_store):
    session = FakeSession({"categories": [(200, "<html>maintenance</html>")]})
    fetcher = make_fetcher(session=session)

    with pytest.raises(FeedParseError):
        await fetcher.request("categories")

    assert len(session.calls) == 1
    assert cache_store.read("categories", fetcher.merge_params()) is None


@pytest.mark.asyncio
async def test_deeply_nested_json_is_a_parse_error(make_fetcher, cache_store):
    session = FakeSession({"categories": [(200, "[" * 100000 + "]" * 100000)]})
    fetcher = make_fetcher(session=session)

    with pytest.raises(FeedParseError):
        await fetcher.request("categories")

    assert len(session.calls) == 1
    assert not os.path.exists(cache_store.path_for("categories", fetcher.merge_params()))


@pytest.mark.asyncio
async def test_each_attempt_uses_its_backoff_delay_as_timeout(make_fetcher):
    session = FakeSession({"categories": [ClientConnectionError("reset")]})
    backoff = BackoffPolicy(max_retries=3, factor=2, min_delay=0.01, max_delay=0.03)
    fetcher = make_fetcher(session=session, backoff=backoff)

    with pytest.raises(FeedFetchError):
        await fetcher.request("categories")

    timeouts = [kwargs["timeout"].total for _, kwargs in session.calls]
    assert timeouts == [0.01, 0.02, 0.03]


@pytest.mark.asyncio
async def test_cache_write_failure_does_not_fail_fetch(make_fetcher, tmp_path):
    blocker = tmp_path / "blocked"
    blocker.write_text("not a directory")
    session = FakeSession({"channels": [{"channels": []}]})
    fetcher = make_fetcher(session=session, cache=CacheStore(str(blocker), ttl_seconds=60))

    assert await fetcher.fetch("channels") == {"channels": []}
    assert len(fetcher.cache_write_failures) == 1


@pytest.mark.asyncio
async def test_fetch_logs_and_reraises(make_fetcher, caplog):
    session = FakeSession({"home/highlights": [(404, "missing")]})
    fetcher = make_fetcher(session=session)

    with caplog.at_level(logging.ERROR):
        with pytest.raises(FeedFetchError):
            await fetcher.fetch("home/highlights")

    assert "Failed to get feed home/highlights" in caplog.text


@pytest.mark.asyncio
async def test_fetch_result_wraps_outcomes(make_fetcher):
    session = FakeSession({"channels": [{"channels": []}], "categories": [(500, "")]})
    fetcher = make_fetcher(session=session)

    ok = await fetcher.fetch_result("channels")
    failed = await fetcher.fetch_result("categories")

    assert ok.ok and ok.data == {"channels": []}
    assert not failed.ok and isinstance(failed.error, FeedFetchError)


@pytest.mark.asyncio
async def test_close_leaves_injected_session_open(make_fetcher):
    session = FakeSession()
    async with make_fetcher(session=session):
        pass

    assert session.closed is False


@pytest.mark.asyncio
async def test_feed_name_is_normalized(make_fetcher):
    session = FakeSession({"categories/c1/programmes": [{"elements": [1]}]})
    fetcher = make_fetcher(session=session)

    assert await fetcher.request("/categories/c1/programmes/") == {"elements": [1]}
    assert session.called_feeds() == ["categories/c1/programmes"]
