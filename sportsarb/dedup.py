"""
Request deduplication for upstream GET requests.

Identical requests share one cache entry and, while in flight, one network call.
Failed requests are retried with exponential backoff and fall back to the last
cached value when there is one.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from .cache import TTLCache
from .config import (
    BATCH_CONCURRENCY,
    BATCH_PAUSE_SECONDS,
    CACHE_TTL_SECONDS,
    DEDUP_CLEANUP_INTERVAL_SECONDS,
    DEDUP_MAX_CACHE_SIZE,
    DEDUP_MAX_RETRIES,
    DEDUP_MEMORY_PRESSURE_RATIO,
    DEDUP_RETRY_DELAY_SECONDS,
    DEDUP_TIMEOUT_SECONDS,
    ODDS_API_USER_AGENT,
    WARM_CACHE_CONCURRENCY,
)
from .errors import (
    ArbitrageError,
    UpstreamHTTPError,
    UpstreamRequestError,
    UpstreamTimeoutError,
)

logger = logging.getLogger(__name__)

ResponseHook = Callable[[httpx.Response], None]


def create_cache_key(base: str, params: Optional[dict] = None) -> str:
    """Stable key for ``base`` plus params, independent of param order."""
    return f"{base}:{json.dumps(params or {}, sort_keys=True, default=str)}"


def _short(key: str, length: int = 100) -> str:
    return key if len(key) <= length else key[:length] + "..."


@dataclass
class BatchRequest:
    url: str
    params: Optional[dict] = None
    headers: Optional[dict] = None
    cache_key: Optional[str] = None
    ttl: Optional[float] = None


@dataclass
class BatchResult:
    url: str
    result: Any = None
    error: Optional[ArbitrageError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RequestDeduplicationManager:
    """Cache, coalesce and retry JSON GET requests."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        cache: Optional[TTLCache] = None,
        default_ttl: float = CACHE_TTL_SECONDS,
        max_cache_size: int = DEDUP_MAX_CACHE_SIZE,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._owns_client = client is None
        self.cache = cache if cache is not None else TTLCache(
            default_ttl=default_ttl, max_size=max_cache_size, clock=clock
        )
        self.default_ttl = default_ttl
        self._sleep = sleep
        self._pending: dict[str, asyncio.Future] = {}
        self._request_counts: dict[str, int] = {}
        self._error_counts: dict[str, int] = {}
        self._hits = 0
        self._misses = 0
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers={
                "Accept": "application/json",
                "User-Agent": ODDS_API_USER_AGENT,
            })
        return self._client

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @staticmethod
    def generate_cache_key(url: str, params: Optional[dict] = None, headers: Optional[dict] = None) -> str:
        options = {}
        if params:
            options["params"] = params
        if headers:
            options["headers"] = headers
        return create_cache_key(url, options)

    async def fetch(
        self,
        url: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        cache_key: Optional[str] = None,
        ttl: Optional[float] = None,
        max_retries: int = DEDUP_MAX_RETRIES,
        retry_delay: float = DEDUP_RETRY_DELAY_SECONDS,
        timeout: float = DEDUP_TIMEOUT_SECONDS,
        on_response: Optional[ResponseHook] = None,
        force_refresh: bool = False,
    ) -> Any:
        """
        Return the decoded JSON body for ``url``.

        Args:
            cache_key: Key for caching and coalescing; derived from url/params/headers when omitted
            ttl: Seconds a successful response stays fresh
            max_retries: Total attempts for server and network errors
            retry_delay: Delay before the second attempt, doubled after each failure
            timeout: Per-attempt timeout in seconds
            on_response: Called with every raw response, e.g. to read quota headers
            force_refresh: Skip a fresh cached value; it still serves as the stale fallback

        Raises:
            UpstreamHTTPError, UpstreamTimeoutError, UpstreamRequestError when the
            request fails and no stale cached value exists.
        """
        key = cache_key or self.generate_cache_key(url, params, headers)

        entry = None if force_refresh else self.cache.get_entry(key)
        if entry is not None:
            self._hits += 1
            logger.debug("Cache hit for: %s", _short(key))
            return entry.data

        pending = self._pending.get(key)
        if pending is not None:
            logger.debug("Deduplicating request: %s", _short(key))
            return await asyncio.shield(pending)

        self._misses += 1
        task = asyncio.ensure_future(self._resolve(
            key, url, params, headers,
            self.default_ttl if ttl is None else ttl,
            max_retries, retry_delay, timeout, on_response,
        ))
        self._pending[key] = task
        return await asyncio.shield(task)

    async def _resolve(self, key, url, params, headers, ttl, max_retries, retry_delay, timeout, on_response):
        stale = self.cache.get_entry(key, allow_stale=True)
        try:
            result = await self._execute_with_retry(
                url, params, headers, max_retries, retry_delay, timeout, on_response
            )
        except ArbitrageError:
            self._error_counts[key] = self._error_counts.get(key, 0) + 1
            if stale is not None:
                logger.warning("Using stale cache due to error: %s", _short(key))
                return stale.data
            raise
        else:
            self.cache.set(key, result, ttl)
            self._request_counts[key] = self._request_counts.get(key, 0) + 1
            self._error_counts.pop(key, None)
            logger.debug("Request completed and cached: %s", _short(key))
            return result
        finally:
            if self._pending.get(key) is asyncio.current_task():
                del self._pending[key]

    async def _execute_with_retry(self, url, params, headers, max_retries, retry_delay, timeout, on_response):
        attempts = max(1, max_retries)
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                logger.debug("Attempt %d/%d: %s", attempt, attempts, _short(url))
                response = await self.client.get(url, params=params, headers=headers, timeout=timeout)

                if on_response is not None:
                    on_response(response)

                if response.is_error:
                    raise UpstreamHTTPError(
                        response.status_code,
                        response.reason_phrase,
                        url,
                        body=response.text[:500],
                        headers=response.headers,
                    )

                return response.json()

            except httpx.TimeoutException:
                raise UpstreamTimeoutError(timeout, url)
            except UpstreamHTTPError as e:
                # Client errors will not change on retry
                if e.is_client_error:
                    raise
                last_error = e
            except (httpx.RequestError, ValueError) as e:
                last_error = e

            if attempt < attempts:
                delay = retry_delay * (2 ** (attempt - 1))
                logger.info("Request to %s failed (%s), retrying in %.2fs", _short(url), last_error, delay)
                await self._sleep(delay)

        if isinstance(last_error, ArbitrageError):
            raise last_error
        raise UpstreamRequestError(f"Request failed: {last_error}") from last_error

    async def batch_requests(
        self,
        requests: list[BatchRequest],
        concurrency: int = BATCH_CONCURRENCY,
        pause: float = BATCH_PAUSE_SECONDS,
        **fetch_options,
    ) -> list[BatchResult]:
        """Fetch ``requests`` in chunks of ``concurrency``, pausing between chunks."""
        concurrency = max(1, concurrency)
        results: list[BatchResult] = []

        for start in range(0, len(requests), concurrency):
            chunk = requests[start:start + concurrency]
            results += await asyncio.gather(*(self._fetch_one(r, fetch_options) for r in chunk))

            if start + concurrency < len(requests):
                await self._sleep(pause)

        return results

    async def _fetch_one(self, request: BatchRequest, fetch_options: dict) -> BatchResult:
        try:
            data = await self.fetch(
                request.url,
                params=request.params,
                headers=request.headers,
                cache_key=request.cache_key,
                ttl=request.ttl,
                **fetch_options,
            )
        except ArbitrageError as e:
            return BatchResult(url=request.url, error=e)
        return BatchResult(url=request.url, result=data)

    async def warm_cache(
        self,
        urls: list[str],
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        ttl: Optional[float] = None,
    ) -> list[BatchResult]:
        logger.info("Warming cache for %d URLs", len(urls))
        requests = [BatchRequest(url=url, params=params, headers=headers, ttl=ttl) for url in urls]
        results = await self.batch_requests(requests, concurrency=WARM_CACHE_CONCURRENCY)
        logger.info("Cache warming completed: %d/%d ok", sum(r.ok for r in results), len(results))
        return results

    def invalidate_cache(self, pattern: Optional[str] = None) -> int:
        """Drop cached and pending entries whose key contains ``pattern`` (all when None)."""
        removed = self.cache.invalidate(pattern)
        for key in list(self._pending):
            if pattern is None or pattern in key:
                del self._pending[key]

        if pattern is None:
            logger.info("All cache cleared")
        else:
            logger.info("Invalidated %d cache entries matching: %s", len(removed), pattern)
        return len(removed)

    def cleanup_expired_entries(self) -> int:
        removed = self.cache.cleanup_expired()
        logger.info("Cache cleanup: %d expired entries removed, %d entries remaining",
                    len(removed), len(self.cache))
        return len(removed)

    def handle_memory_pressure(self) -> int:
        removed = self.cache.handle_memory_pressure()
        if removed:
            logger.warning("Memory pressure: removed %d cache entries", len(removed))
        return len(removed)

    def run_maintenance(self) -> int:
        """Drop expired entries, then shed half the cache if it is still nearly full."""
        removed = self.cleanup_expired_entries()
        if len(self.cache) >= self.cache.max_size * DEDUP_MEMORY_PRESSURE_RATIO:
            removed += self.handle_memory_pressure()
        return removed

    def get_cache_stats(self) -> dict:
        successes = sum(self._request_counts.values())
        errors = sum(self._error_counts.values())
        lookups = self._hits + self._misses
        completed = successes + errors

        top_keys = sorted(
            (
                {
                    "key": _short(key, 50),
                    "requests": count,
                    "errors": self._error_counts.get(key, 0),
                }
                for key, count in self._request_counts.items()
            ),
            key=lambda item: item["requests"],
            reverse=True,
        )[:10]

        return {
            "size": len(self.cache),
            "pending": len(self._pending),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": (self._hits / lookups) * 100 if lookups else 0,
            "error_rate": (errors / completed) * 100 if completed else 0,
            "top_keys": top_keys,
        }

    def start_cleanup_task(self, interval: float = DEDUP_CLEANUP_INTERVAL_SECONDS) -> asyncio.Task:
        """Run ``run_maintenance`` every ``interval`` seconds on the running loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.ensure_future(self._cleanup_loop(interval))
        return self._cleanup_task

    async def _cleanup_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            self.run_maintenance()

    async def close(self):
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

        self.cache.clear()
        self._pending.clear()
        self._request_counts.clear()
        self._error_counts.clear()
