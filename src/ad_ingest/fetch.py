"""Bounded-concurrency media downloads with timeouts and linear backoff."""

from __future__ import annotations

import asyncio
import contextvars
import functools
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Protocol, TypeVar

import requests

from .errors import DownloadFailed
from .logging import jlog
from .models import MediaAsset

DEFAULT_CONTENT_TYPE = "application/octet-stream"

T = TypeVar("T")


class BoundedLimiter:
    """Counting semaphore that also records how many holders it has seen at once.

    Blocking calls go through :meth:`run_blocking`, which runs them on the
    limiter's own thread pool. Their slot is released when the thread
    returns, not when the caller stops waiting, so a timed-out request that
    is still on the wire keeps counting against the limit.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self._sem = asyncio.Semaphore(limit)
        self._executor: ThreadPoolExecutor | None = None
        self.in_flight = 0
        self.peak = 0

    def _enter(self) -> None:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)

    def _leave(self) -> None:
        self.in_flight -= 1
        self._sem.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self._sem.acquire()
        self._enter()
        try:
            yield
        finally:
            self._leave()

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.limit, thread_name_prefix="ad-ingest-io")
        return self._executor

    def _thread_done(self, future: asyncio.Future) -> None:
        if not future.cancelled():
            future.exception()  # mark retrieved; the waiter may have timed out already
        self._leave()

    async def run_blocking(self, fn: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
        """Run ``fn`` in a worker thread under one slot, waiting at most ``timeout``."""

        await self._sem.acquire()
        self._enter()
        call = functools.partial(contextvars.copy_context().run, fn, *args, **kwargs)
        try:
            future = asyncio.get_running_loop().run_in_executor(self._pool(), call)
        except BaseException:
            self._leave()
            raise
        future.add_done_callback(self._thread_done)
        return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


class Fetcher(Protocol):
    async def get(self, url: str) -> MediaAsset: ...


class HttpFetcher:
    """Single-attempt downloads over a shared ``requests`` session.

    :func:`download_with_retry` calls :meth:`get_sync` through the IO
    limiter's thread pool; :meth:`get` is for callers without a limiter.
    """

    def __init__(self, *, user_agent: str, timeout_s: float, session: requests.Session | None = None) -> None:
        self.timeout_s = timeout_s
        self.session = session or _make_http(user_agent)

    def get_sync(self, url: str) -> MediaAsset:
        resp = self.session.get(url, timeout=self.timeout_s)
        resp.raise_for_status()
        content_type = (resp.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE).split(";", 1)[0].strip()
        return MediaAsset(url=url, data=resp.content, content_type=content_type or DEFAULT_CONTENT_TYPE)

    async def get(self, url: str) -> MediaAsset:
        return await asyncio.to_thread(self.get_sync, url)


def _make_http(user_agent: str) -> requests.Session:
    s = requests.Session()
    s.headers.update({"User-Agent": user_agent})
    return s


async def _attempt(fetcher: Fetcher, url: str, limiter: BoundedLimiter, timeout_s: float) -> MediaAsset:
    get_sync = getattr(fetcher, "get_sync", None)
    if get_sync is not None:
        return await limiter.run_blocking(get_sync, url, timeout=timeout_s)
    async with limiter.slot():
        return await asyncio.wait_for(fetcher.get(url), timeout=timeout_s)


async def download_with_retry(
    fetcher: Fetcher,
    url: str,
    *,
    limiter: BoundedLimiter,
    attempts: int,
    retry_base_s: float,
    timeout_s: float,
    ad_id: str | None = None,
) -> MediaAsset:
    """Download ``url``, retrying with linearly increasing backoff.

    Each attempt holds one IO slot; the backoff sleep does not. A fetcher
    exposing a blocking ``get_sync`` runs it on the limiter's thread pool.
    """

    last_exc: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            asset = await _attempt(fetcher, url, limiter, timeout_s)
            if not asset.data:
                raise DownloadFailed("empty response body", url=url)
            return asset
        except (requests.RequestException, asyncio.TimeoutError, DownloadFailed, OSError) as exc:
            last_exc = exc
            error = str(exc) or exc.__class__.__name__
            if attempt < attempts:
                delay = retry_base_s * attempt
                jlog("info", event="download_retry", ad_id=ad_id, url=url, attempt=attempt, delay_s=delay, error=error)
                await asyncio.sleep(delay)
            else:
                jlog("warning", event="download_failed", ad_id=ad_id, url=url, attempts=attempts, error=error)
    raise DownloadFailed(f"download failed after {attempts} attempts: {last_exc or 'unknown error'}", url=url) from last_exc


__all__ = ["BoundedLimiter", "Fetcher", "HttpFetcher", "download_with_retry"]
