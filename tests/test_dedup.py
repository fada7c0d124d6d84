import asyncio

import httpx
import pytest

from sportsarb.cache import TTLCache
from sportsarb.dedup import BatchRequest, RequestDeduplicationManager, create_cache_key
from sportsarb.errors import UpstreamHTTPError, UpstreamRequestError, UpstreamTimeoutError

URL = "https://odds.test/v4/sports"


class ScriptedUpstream:
    """Replays ``script`` responses in order, repeating the last one."""

    def __init__(self, *script):
        self.script = list(script) or [200]
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(step, Exception):
            raise step
        if step >= 400:
            return httpx.Response(step, text="upstream says no")
        return httpx.Response(step, json={"call": self.calls, "path": request.url.path})


@pytest.fixture
def make_manager(fake_sleep, clock):
    def _make(handler, **kwargs):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return RequestDeduplicationManager(client=client, sleep=fake_sleep, clock=clock, **kwargs)

    return _make


@pytest.mark.asyncio
async def test_successful_response_is_cached(make_manager):
    upstream = ScriptedUpstream(200)
    manager = make_manager(upstream)

    first = await manager.fetch(URL, cache_key="sports")
    second = await manager.fetch(URL, cache_key="sports")

    assert first == second == {"call": 1, "path": "/v4/sports"}
    assert upstream.calls == 1
    stats = manager.get_cache_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 50
    assert stats["top_keys"] == [{"key": "sports", "requests": 1, "errors": 0}]


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_call(make_manager):
    calls = []

    async def slow_upstream(request):
        calls.append(request)
        await asyncio.sleep(0.01)
        return httpx.Response(200, json={"ok": True})

    manager = make_manager(slow_upstream)

    results = await asyncio.gather(*(manager.fetch(URL, params={"a": 1}) for _ in range(5)))

    assert results == [{"ok": True}] * 5
    assert len(calls) == 1
    assert manager.pending_count == 0


@pytest.mark.asyncio
async def test_server_errors_retry_with_backoff(make_manager, fake_sleep):
    upstream = ScriptedUpstream(500, 502, 200)
    manager = make_manager(upstream)

    result = await manager.fetch(URL, max_retries=3, retry_delay=1.0)

    assert result["call"] == 3
    assert fake_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(make_manager, fake_sleep):
    upstream = ScriptedUpstream(503)
    manager = make_manager(upstream)

    with pytest.raises(UpstreamHTTPError) as exc_info:
        await manager.fetch(URL, max_retries=3, retry_delay=0.5)

    assert exc_info.value.status_code == 503
    assert upstream.calls == 3
    assert fake_sleep.delays == [0.5, 1.0]
    assert manager.pending_count == 0
    assert manager.get_cache_stats()["error_rate"] == 100


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(make_manager, fake_sleep):
    upstream = ScriptedUpstream(404)
    manager = make_manager(upstream)

    with pytest.raises(UpstreamHTTPError) as exc_info:
        await manager.fetch(URL)

    assert exc_info.value.is_client_error
    assert exc_info.value.body == "upstream says no"
    assert upstream.calls == 1
    assert fake_sleep.delays == []


@pytest.mark.asyncio
async def test_timeout_is_not_retried(make_manager):
    upstream = ScriptedUpstream(httpx.ReadTimeout("too slow"))
    manager = make_manager(upstream)

    with pytest.raises(UpstreamTimeoutError):
        await manager.fetch(URL, timeout=2.0)

    assert upstream.calls == 1


@pytest.mark.asyncio
async def test_network_errors_retry_then_raise(make_manager, fake_sleep):
    upstream = ScriptedUpstream(httpx.ConnectError("refused"))
    manager = make_manager(upstream)

    with pytest.raises(UpstreamRequestError, match="refused"):
        await manager.fetch(URL, max_retries=2, retry_delay=1.0)

    assert upstream.calls == 2
    assert fake_sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_stale_value_served_when_refresh_fails(make_manager, clock):
    upstream = ScriptedUpstream(200, 500)
    manager = make_manager(upstream)

    fresh = await manager.fetch(URL, cache_key="sports", ttl=10)
    clock.advance(20)
    stale = await manager.fetch(URL, cache_key="sports", ttl=10, max_retries=1)

    assert stale == fresh
    assert upstream.calls == 2
    assert manager.get_cache_stats()["error_rate"] == 50


@pytest.mark.asyncio
async def test_on_response_sees_every_attempt(make_manager):
    seen = []
    manager = make_manager(ScriptedUpstream(500, 200))

    await manager.fetch(URL, max_retries=2, on_response=lambda r: seen.append(r.status_code))

    assert seen == [500, 200]


@pytest.mark.asyncio
async def test_batch_requests_in_chunks(make_manager, fake_sleep):
    def upstream(request):
        if request.url.path.endswith("/bad"):
            return httpx.Response(404)
        return httpx.Response(200, json={"path": request.url.path})

    manager = make_manager(upstream)
    requests = [BatchRequest(url=f"https://odds.test/{name}") for name in ("a", "b", "bad", "c", "d")]

    results = await manager.batch_requests(requests, concurrency=2, pause=0.25)

    assert [r.ok for r in results] == [True, True, False, True, True]
    assert results[0].result == {"path": "/a"}
    assert isinstance(results[2].error, UpstreamHTTPError)
    assert fake_sleep.delays == [0.25, 0.25]


@pytest.mark.asyncio
async def test_warm_cache(make_manager):
    upstream = ScriptedUpstream(200)
    manager = make_manager(upstream)
    urls = ["https://odds.test/a", "https://odds.test/b"]

    results = await manager.warm_cache(urls)
    assert all(r.ok for r in results)

    await manager.fetch(urls[0])
    assert upstream.calls == 2


@pytest.mark.asyncio
async def test_invalidate_and_memory_pressure(make_manager, clock):
    manager = make_manager(ScriptedUpstream(200), max_cache_size=4)
    for key in ("odds:nba", "odds:nfl", "sports:all", "scores:nba"):
        await manager.fetch(URL, cache_key=key)
        clock.advance(1)

    assert manager.invalidate_cache("odds:") == 2
    assert manager.get_cache_stats()["size"] == 2

    assert manager.handle_memory_pressure() == 0
    await manager.fetch(URL, cache_key="odds:nhl")
    await manager.fetch(URL, cache_key="odds:mlb")
    assert manager.handle_memory_pressure() == 2
    assert sorted(manager.cache.keys()) == ["odds:mlb", "odds:nhl"]


@pytest.mark.asyncio
async def test_cleanup_expired_entries(make_manager, clock):
    manager = make_manager(ScriptedUpstream(200))
    await manager.fetch(URL, cache_key="short", ttl=5)
    await manager.fetch(URL, cache_key="long", ttl=500)
    clock.advance(10)

    assert manager.cleanup_expired_entries() == 1
    assert manager.cache.keys() == ["long"]


@pytest.mark.asyncio
async def test_close_cancels_cleanup_and_clears_state(make_manager):
    manager = make_manager(ScriptedUpstream(200))
    await manager.fetch(URL)
    task = manager.start_cleanup_task(interval=3600)

    await manager.close()

    assert task.cancelled()
    assert len(manager.cache) == 0
    assert manager.get_cache_stats()["top_keys"] == []


def test_cache_key_ignores_param_order():
    assert create_cache_key("odds", {"b": 2, "a": 1}) == create_cache_key("odds", {"a": 1, "b": 2})
    assert create_cache_key("odds") == "odds:{}"
    assert RequestDeduplicationManager.generate_cache_key(URL, {"x": 1}) != \
        RequestDeduplicationManager.generate_cache_key(URL, {"x": 2})


@pytest.mark.asyncio
async def test_maintenance_sheds_a_nearly_full_cache(make_manager, clock):
    manager = make_manager(ScriptedUpstream(200), max_cache_size=5)
    for key in ("a", "b", "c"):
        await manager.fetch(URL, cache_key=key)
        clock.advance(1)

    assert manager.run_maintenance() == 0

    await manager.fetch(URL, cache_key="d")
    assert manager.run_maintenance() == 2
    assert sorted(manager.cache.keys()) == ["c", "d"]


@pytest.mark.asyncio
async def test_force_refresh_keeps_stale_fallback(make_manager):
    upstream = ScriptedUpstream(200, 503)
    cache = TTLCache()
    manager = make_manager(upstream, cache=cache)
    assert manager.cache is cache

    first = await manager.fetch(URL, cache_key="sports")
    again = await manager.fetch(URL, cache_key="sports", force_refresh=True, max_retries=1)

    assert again == first
    assert upstream.calls == 2
    assert "sports" in manager.cache
