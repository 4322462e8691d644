import asyncio
import threading
from typing import Callable, List, Optional, Set

import httpx
from loguru import logger

from scraper.fetch.fetcher import DecoderCache, ResponseProcessor
from scraper.fetch.protocol import (
    ACTION_START,
    ACTION_STOP,
    ControlMessage,
    FetchError,
    FetchRequest,
    encode_message,
    decode_message,
)


ReplyCallback = Callable[[str], None]


class FetchWorker(threading.Thread):
    """
    One isolated fetch unit: its own thread, event loop, HTTP client and
    decoder cache. It only ever sees JSON messages, posted with post() and
    answered through the reply callback.
    """

    def __init__(
        self,
        worker_id: int,
        origin: str,
        on_reply: ReplyCallback,
        *,
        request_timeout: float = 9.999,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(name=f"FetchWorker-{worker_id}", daemon=True)
        self.worker_id = worker_id
        self.origin = origin
        self.on_reply = on_reply
        self.request_timeout = request_timeout
        self.user_agent = user_agent
        self.transport = transport
        self.decoders = DecoderCache()
        self.log = logger.bind(worker_id=f"fetch-{worker_id}")

        self._loop = asyncio.new_event_loop()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._buffered: List[FetchRequest] = []
        self._tasks: Set[asyncio.Task] = set()
        self._released = False

    # --------------------------
    #  Pool side (any thread)
    # --------------------------
    def post(self, raw: str) -> None:
        self._loop.call_soon_threadsafe(self._inbox.put_nowait, raw)

    # --------------------------
    #  Worker thread
    # --------------------------
    def run(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._serve())
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
        except Exception:
            self.log.exception(f"{self.name} crashed")
        finally:
            self._loop.close()
            self.log.debug(f"{self.name} exited")

    def _client(self) -> httpx.AsyncClient:
        headers = {"User-Agent": self.user_agent} if self.user_agent else None
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=self.request_timeout),
            follow_redirects=True,
            headers=headers,
            transport=self.transport,
        )

    async def _serve(self) -> None:
        async with self._client() as client:
            processor = ResponseProcessor(self.origin, client, self.decoders)

            while True:
                raw = await self._inbox.get()
                try:
                    message = decode_message(raw)
                except ValueError as exc:
                    self.log.warning(f"{self.name} dropped malformed message: {exc}")
                    continue

                if isinstance(message, ControlMessage):
                    if message.action == ACTION_STOP:
                        break
                    if message.action == ACTION_START and not self._released:
                        self._released = True
                        self.log.info(f"{self.name} started.")
                        for request in self._buffered:
                            self._spawn(processor, request)
                        self._buffered.clear()
                    continue

                if not isinstance(message, FetchRequest):
                    self.log.warning(f"{self.name} ignored unexpected message {message!r}")
                    continue

                if self._released:
                    self._spawn(processor, message)
                else:
                    self._buffered.append(message)

            if self._tasks:
                self.log.info(f"{self.name} finishing {len(self._tasks)} in-flight request(s)")
                await asyncio.gather(*self._tasks, return_exceptions=True)

    def _spawn(self, processor: ResponseProcessor, request: FetchRequest) -> None:
        task = self._loop.create_task(self._handle(processor, request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle(self, processor: ResponseProcessor, request: FetchRequest) -> None:
        try:
            response = await processor.fetch(request.url)
            reply = encode_message(response)
        except Exception as exc:
            self.log.warning(f"[{self.name}] No response for {request.url}: {exc!r}")
            reply = encode_message(FetchError(url=request.url, error=str(exc) or type(exc).__name__))

        self._reply(reply)

    def _reply(self, raw: str) -> None:
        try:
            self.on_reply(raw)
        except RuntimeError as exc:
            # the pool's loop is already gone
            self.log.debug(f"{self.name} dropped reply after pool shutdown: {exc}")
