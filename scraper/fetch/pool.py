from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import httpx
from loguru import logger

from scraper.fetch.protocol import (
    ACTION_START,
    ACTION_STOP,
    ControlMessage,
    FetchError,
    FetchRequest,
    FetchResponse,
    decode_message,
    encode_message,
)
from scraper.fetch.worker import FetchWorker
from scraper.monitoring.metrics_server import IN_FLIGHT


DEFAULT_REQUEST_TIMEOUT_MS = 9999
WORKER_JOIN_TIMEOUT = 1.0


class FetchTimeout(Exception):
    """No reply arrived for a request within the request timeout."""


class FetchFailed(Exception):
    """The worker reported an error instead of a response."""


class FetchWorkerPool:
    """
    Correlates fetch requests with worker replies.

    Requests are keyed by URL. The pending table is only touched from the
    event loop that started the pool: worker threads hand their replies to
    that loop with call_soon_threadsafe, so no lock is needed around it.
    """

    def __init__(
        self,
        origin: str,
        worker_count: int = 1,
        request_timeout_ms: float = DEFAULT_REQUEST_TIMEOUT_MS,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")

        self.origin = origin
        self.worker_count = worker_count
        self.request_timeout = request_timeout_ms / 1000
        self.user_agent = user_agent
        self.transport = transport

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._workers: List[FetchWorker] = []
        self._load: Dict[int, int] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._assigned: Dict[str, FetchWorker] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._running = False

    @property
    def outstanding(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> bool:
        return self._running

    # --------------------------
    #  Lifecycle
    # --------------------------
    def start(self) -> None:
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        self._workers = [
            FetchWorker(
                worker_id,
                self.origin,
                self._post_reply,
                request_timeout=self.request_timeout,
                user_agent=self.user_agent,
                transport=self.transport,
            )
            for worker_id in range(1, self.worker_count + 1)
        ]
        self._load = {worker.worker_id: 0 for worker in self._workers}

        start_message = encode_message(ControlMessage(action=ACTION_START))
        for worker in self._workers:
            worker.start()
            worker.post(start_message)

        self._running = True
        logger.info(f"Fetch pool started with {self.worker_count} worker(s) for {self.origin}")

    async def stop(self, grace: Optional[float] = None) -> None:
        """
        Stop accepting requests, give outstanding ones up to ``grace``
        seconds (one request timeout by default) to come back, fail the
        rest and tear the workers down.
        """
        if not self._running:
            return
        self._running = False

        stop_message = encode_message(ControlMessage(action=ACTION_STOP))
        for worker in self._workers:
            try:
                worker.post(stop_message)
            except RuntimeError:
                logger.debug(f"{worker.name} already gone")

        if self._pending:
            wait_for = self.request_timeout if grace is None else grace
            logger.info(f"Waiting up to {wait_for:.1f}s for {len(self._pending)} outstanding fetch(es)")
            await asyncio.wait(list(self._pending.values()), timeout=wait_for)

        for url in list(self._pending):
            self._fail(url, FetchTimeout(f"Fetch pool stopped before {url} was answered"))

        workers, self._workers = self._workers, []
        await asyncio.to_thread(self._join, workers)
        logger.info("Fetch pool stopped.")

    @staticmethod
    def _join(workers: List[FetchWorker]) -> None:
        for worker in workers:
            worker.join(WORKER_JOIN_TIMEOUT)
            if worker.is_alive():
                logger.warning(f"{worker.name} did not exit in time")

    # --------------------------
    #  Requests
    # --------------------------
    async def fetch(self, url: str) -> FetchResponse:
        if not self._running:
            raise RuntimeError("Fetch pool is not running")

        future = self._pending.get(url)
        if future is None:
            future = self._dispatch(url)

        # several callers may share one request; shield keeps a cancelled
        # caller from cancelling it for the others
        return await asyncio.shield(future)

    def _dispatch(self, url: str) -> asyncio.Future:
        loop = self._loop
        future = loop.create_future()
        worker = min(self._workers, key=lambda w: self._load[w.worker_id])

        self._pending[url] = future
        self._assigned[url] = worker
        self._load[worker.worker_id] += 1
        self._timers[url] = loop.call_later(self.request_timeout, self._expire, url, future)
        IN_FLIGHT.set(len(self._pending))

        worker.post(encode_message(FetchRequest(url=url)))
        logger.debug(f"Dispatched {url} to {worker.name}")
        return future

    def _forget(self, url: str) -> Optional[asyncio.Future]:
        future = self._pending.pop(url, None)
        timer = self._timers.pop(url, None)
        if timer is not None:
            timer.cancel()
        worker = self._assigned.pop(url, None)
        if worker is not None:
            self._load[worker.worker_id] -= 1
        IN_FLIGHT.set(len(self._pending))
        return future

    def _fail(self, url: str, exc: Exception) -> None:
        future = self._forget(url)
        if future is not None and not future.done():
            future.set_exception(exc)

    def _expire(self, url: str, future: asyncio.Future) -> None:
        if self._pending.get(url) is not future:
            return
        logger.warning(f"Fetch of {url} timed out after {self.request_timeout:.3f}s")
        self._fail(url, FetchTimeout(f"No reply for {url} within {self.request_timeout:.3f}s"))

    # --------------------------
    #  Replies
    # --------------------------
    def _post_reply(self, raw: str) -> None:
        """Called on a worker thread."""
        self._loop.call_soon_threadsafe(self._on_message, raw)

    def _on_message(self, raw: str) -> None:
        try:
            message = decode_message(raw)
        except (ValueError, KeyError) as exc:
            logger.warning(f"Dropping malformed worker reply: {exc}")
            return

        if not isinstance(message, (FetchResponse, FetchError)):
            logger.warning(f"Dropping unexpected worker message {message!r}")
            return

        future = self._forget(message.url)
        if future is None:
            logger.debug(f"Dropping reply for {message.url}: nothing pending")
            return
        if future.done():
            return

        if isinstance(message, FetchError):
            future.set_exception(FetchFailed(message.error))
        else:
            future.set_result(message)
