from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from bs4 import BeautifulSoup
from loguru import logger
from tortoise import timezone

from scraper.fetch.pool import FetchFailed, FetchTimeout, FetchWorkerPool
from scraper.fetch.protocol import FetchResponse
from scraper.monitoring.metrics_server import FETCH_LATENCY, FETCHES, LINKS_ENQUEUED, PARSES
from scraper.parsing.html_extractor import parse_document
from scraper.parsing.link_extractor import DiscoveredLink, LinkExtractor
from scraper.parsing.strategies import NoClassifier, PageClassifier
from scraper.rate_limiter import RateLimiter
from scraper.storage.models.page_model import FAILED_CONTENT_TYPE, CrawlStatus
from scraper.storage.page_store import HTML_CONTENT_TYPE, CrawlRecord, PageStore
from scraper.utils.url_utils import is_same_origin


RESULT_FIELDS = ("status", "content_type", "body", "date")
REDIRECT_SOURCE_FIELDS = ("status", "content_type", "body", "redirect_target_url", "date")
REDIRECT_TARGET_FIELDS = ("status", "queue_priority", "content_type", "body", "original_url", "date")


@dataclass
class CrawlSummary:
    fetched: int = 0
    fetch_errors: int = 0
    no_response: int = 0
    redirects: int = 0
    parsed: int = 0
    parse_errors: int = 0
    links_enqueued: int = 0


class CrawlScheduler:
    """
    Drives a crawl from the frontier to exhaustion.

    The fetch stage is a producer popping the store into a bounded channel
    and ``parallel`` consumers fetching through the rate limiter and the
    worker pool. The parse stage pops fetched HTML, extracts links and feeds
    them back into the store. Both stages run until the frontier stays empty
    or stop() is called; no failure of a single page ends either of them.
    """

    def __init__(
        self,
        store: PageStore,
        pool: FetchWorkerPool,
        limiter: RateLimiter,
        extractor: LinkExtractor,
        classifier: Optional[PageClassifier] = None,
        max_empty_pops: int = 10,
        idle_delay_ms: float = 500,
        parse_content_type: str = HTML_CONTENT_TYPE,
        parse_stage: bool = True,
    ):
        self.store = store
        self.pool = pool
        self.limiter = limiter
        self.extractor = extractor
        self.classifier = classifier or NoClassifier()
        self.max_empty_pops = max(1, max_empty_pops)
        self.idle_delay = idle_delay_ms / 1000
        self.parse_content_type = parse_content_type
        self.parse_stage = parse_stage

        self.summary = CrawlSummary()
        self._stop = asyncio.Event()
        self._fetching = 0
        self._parsing = 0
        self._fetch_done = False

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Stop requested; draining in-flight fetches...")
            self._stop.set()

    async def run(self) -> CrawlSummary:
        logger.info("Scheduler started...")
        self._fetch_done = False
        self.pool.start()
        try:
            stages = [self._fetch_stage()]
            if self.parse_stage:
                stages.append(self._parse_stage())
            await asyncio.gather(*stages)
        finally:
            await self.pool.stop()

        logger.info(f"Crawl finished: {self.summary}")
        return self.summary

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.idle_delay)
        except asyncio.TimeoutError:
            pass

    async def _busy(self) -> bool:
        """Whether more frontier entries may still show up."""
        if self._fetching or self._parsing:
            return True
        waiting = 0
        if self.parse_stage:
            waiting = await self.store.count_fetched(self.parse_content_type)
        # a parse may have popped the last fetched page during the count
        return waiting > 0 or bool(self._fetching or self._parsing)

    # --------------------------
    #  Fetch stage
    # --------------------------
    async def _fetch_stage(self) -> None:
        channel: asyncio.Queue = asyncio.Queue(maxsize=self.limiter.parallel)
        consumers = [
            asyncio.create_task(self._consume(channel), name=f"fetch-consumer-{n}")
            for n in range(self.limiter.parallel)
        ]
        try:
            await self._produce(channel)
        finally:
            for _ in consumers:
                await channel.put(None)
            await asyncio.gather(*consumers)
            self._fetch_done = True
            logger.info("Fetch stage finished.")

    async def _produce(self, channel: asyncio.Queue) -> None:
        empty_pops = 0
        while not self._stop.is_set():
            try:
                record = await self.store.pop_queue()
            except Exception:
                logger.exception("Frontier pop failed")
                await self._idle()
                continue

            if record is None:
                # empty pops only count once nothing can add to the frontier
                if not await self._busy():
                    empty_pops += 1
                    if empty_pops >= self.max_empty_pops:
                        logger.info(f"Frontier exhausted after {empty_pops} empty pops")
                        return
                else:
                    empty_pops = 0
                await self._idle()
                continue

            empty_pops = 0
            self._fetching += 1
            logger.debug(f"Dequeued: {record.url}")
            await channel.put(record)

    async def _consume(self, channel: asyncio.Queue) -> None:
        while True:
            record = await channel.get()
            if record is None:
                return
            try:
                await self._fetch_one(record)
            except Exception:
                # the record stays FETCHING until recover_in_flight
                logger.exception(f"Error processing {record.url}")
            finally:
                self._fetching -= 1

    async def _fetch_one(self, record: CrawlRecord) -> None:
        async with self.limiter.limit():
            started = time.perf_counter()
            try:
                response = await self.pool.fetch(record.url)
            except (FetchTimeout, FetchFailed) as exc:
                await self._record_no_response(record, exc)
                return
            finally:
                FETCH_LATENCY.observe(time.perf_counter() - started)

        await self._record_response(record, response)

    async def _record_no_response(self, record: CrawlRecord, exc: Exception) -> None:
        record.status = CrawlStatus.NO_RESPONSE
        record.content_type = FAILED_CONTENT_TYPE
        record.body = str(exc) or type(exc).__name__
        record.date = timezone.now()
        await self.store.put(record, RESULT_FIELDS)

        FETCHES.labels(outcome="no_response").inc()
        self.summary.no_response += 1
        logger.warning(f"No response for {record.url}: {record.body}")

    async def _record_response(self, record: CrawlRecord, response: FetchResponse) -> None:
        if not response.ok:
            record.status = CrawlStatus.FETCH_ERROR
            record.content_type = FAILED_CONTENT_TYPE
            record.body = response.body if isinstance(response.body, str) else response.reason
            record.date = timezone.now()
            await self.store.put(record, RESULT_FIELDS)

            FETCHES.labels(outcome="fetch_error").inc()
            self.summary.fetch_errors += 1
            logger.info(f"Fetch error for {record.url}: HTTP {response.status} {record.body}")
            return

        if response.redirected and response.final_url:
            if await self._record_redirect(record, response):
                return

        record.status = CrawlStatus.OK
        record.content_type = response.content_type
        record.body = response.body
        record.date = timezone.now()
        await self.store.put(record, RESULT_FIELDS)

        FETCHES.labels(outcome="ok").inc()
        self.summary.fetched += 1
        logger.info(f"Fetched: {record.url} ({response.content_type}, status={response.status})")

    async def _record_redirect(self, record: CrawlRecord, response: FetchResponse) -> bool:
        """
        Write the redirect pair. Returns False when the target is the same
        page, which is then stored like a plain response.
        """
        now = timezone.now()

        if not is_same_origin(response.final_url, self.extractor.origin):
            record.status = CrawlStatus.REDIRECT
            record.content_type = None
            record.body = None
            record.redirect_target_url = response.final_url
            record.date = now
            await self.store.put(record, REDIRECT_SOURCE_FIELDS)

            FETCHES.labels(outcome="redirect").inc()
            self.summary.redirects += 1
            logger.info(f"Redirect off origin: {record.url} -> {response.final_url}")
            return True

        target = self.extractor.canonicalize(response.final_url)
        if target == record.url:
            return False

        await self.store.put(
            CrawlRecord(
                url=target,
                status=CrawlStatus.OK,
                date=now,
                referrer=record.referrer,
                content_type=response.content_type,
                body=response.body,
                original_url=record.url,
            ),
            REDIRECT_TARGET_FIELDS,
        )

        record.status = CrawlStatus.REDIRECT
        record.content_type = None
        record.body = None
        record.redirect_target_url = target
        record.date = now
        await self.store.put(record, REDIRECT_SOURCE_FIELDS)

        FETCHES.labels(outcome="redirect").inc()
        self.summary.redirects += 1
        self.summary.fetched += 1
        logger.info(f"Redirect: {record.url} -> {target}")
        return True

    # --------------------------
    #  Parse stage
    # --------------------------
    async def _parse_stage(self) -> None:
        while not self._stop.is_set():
            claimed = False

            def claim(record: CrawlRecord) -> None:
                # counted before the row leaves OK so the fetch stage never
                # sees a page that is neither waiting nor being parsed
                nonlocal claimed
                if not claimed:
                    claimed = True
                    self._parsing += 1

            try:
                record = await self.store.pop_fetched(self.parse_content_type, on_claim=claim)
                if record is not None:
                    await self._parse_one(record)
                    continue
            except Exception:
                logger.exception("Parse stage error")
            finally:
                if claimed:
                    self._parsing -= 1

            if self._fetch_done:
                break
            await self._idle()

        logger.info("Parse stage finished.")

    def _analyse(self, record: CrawlRecord) -> Tuple[Dict[str, DiscoveredLink], Optional[str]]:
        body = record.body
        if isinstance(body, bytes):
            body = body.decode("utf-8", "replace")
        document: BeautifulSoup = parse_document(body or "")
        links = self.extractor.extract(document, record.url)
        return links, self.classifier.classify(record.url, document)

    async def _parse_one(self, record: CrawlRecord) -> None:
        try:
            links, tag = await asyncio.to_thread(self._analyse, record)
        except Exception as exc:
            record.status = CrawlStatus.PARSE_ERROR
            record.body = str(exc) or type(exc).__name__
            record.date = timezone.now()
            await self.store.put(record, ("status", "body", "date"))

            PARSES.labels(outcome="error").inc()
            self.summary.parse_errors += 1
            logger.warning(f"Parse error for {record.url}: {record.body}")
            return

        added = 0
        for link in links.values():
            new = CrawlRecord(url=link.url, queue_priority=link.priority, referrer=link.referrer)
            if await self.store.add(new):
                added += 1

        fields = ["status", "date"]
        record.status = CrawlStatus.PARSED
        record.date = timezone.now()
        if tag is not None:
            record.tag = tag
            fields.append("tag")
        await self.store.put(record, fields)

        PARSES.labels(outcome="ok").inc()
        LINKS_ENQUEUED.inc(added)
        self.summary.parsed += 1
        self.summary.links_enqueued += added
        logger.info(f"Parsed: {record.url} (links={len(links)}, new={added})")
