from __future__ import annotations

import asyncio
from dataclasses import dataclass, fields as dataclass_fields
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional, Sequence, Tuple, Type, TypeVar, Union

from loguru import logger
from tortoise import timezone
from tortoise.exceptions import IntegrityError, OperationalError, TransactionManagementError
from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from scraper.storage.models.page_model import (
    FETCHING_CONTENT_TYPE,
    FINAL_STATUSES,
    IN_FLIGHT_STATUSES,
    CrawlPage,
    CrawlStatus,
)


T = TypeVar("T")

HTML_CONTENT_TYPE = "text/html"

RETRYABLE_ERRORS: Tuple[Type[Exception], ...] = (OperationalError, TransactionManagementError)


class PageStoreError(Exception):
    """A store operation kept failing after all retries."""


@dataclass
class CrawlRecord:
    url: str
    status: CrawlStatus = CrawlStatus.FRESH
    queue_priority: Optional[int] = None
    date: Optional[datetime] = None
    referrer: Optional[str] = None
    tag: Optional[str] = None
    content_type: Optional[str] = None
    body: Union[str, bytes, None] = None
    original_url: Optional[str] = None
    redirect_target_url: Optional[str] = None

    @property
    def queued(self) -> bool:
        return self.queue_priority is not None

    @classmethod
    def from_page(cls, page: CrawlPage) -> "CrawlRecord":
        body = page.raw_body if page.raw_body is not None else page.body
        return cls(
            url=page.url,
            status=CrawlStatus(page.status),
            queue_priority=page.queue_priority,
            date=page.date,
            referrer=page.referrer,
            tag=page.tag,
            content_type=page.content_type,
            body=body,
            original_url=page.original_url,
            redirect_target_url=page.redirect_target_url,
        )


RECORD_FIELDS = tuple(f.name for f in dataclass_fields(CrawlRecord) if f.name != "url")


@dataclass
class StoreStats:
    total: int
    queue_depth: int
    done_count: int
    recently_updated_count: int


def _columns(record: CrawlRecord, field_names: Iterable[str]) -> Dict[str, object]:
    """Map record fields to model columns; "body" covers both body columns."""
    columns: Dict[str, object] = {}
    for name in field_names:
        if name not in RECORD_FIELDS:
            raise ValueError(f"Unknown crawl record field: {name}")
        if name == "body":
            if isinstance(record.body, (bytes, bytearray)):
                columns["body"] = None
                columns["raw_body"] = bytes(record.body)
            else:
                columns["body"] = record.body
                columns["raw_body"] = None
        else:
            columns[name] = getattr(record, name)
    return columns


class PageStore:
    """Transactional crawl-record store on top of Tortoise ORM.

    Every public operation runs in its own transaction. Conflicts raised by
    the database are retried here and never reach the caller unless they
    persist past ``max_retries``.
    """

    def __init__(
        self,
        connection_name: str = "default",
        *,
        max_retries: int = 5,
        retry_delay: float = 0.05,
        recent_window: float = 60.0,
    ) -> None:
        self.connection_name = connection_name
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.recent_window = recent_window

    # -------------------------------------------------------
    # Retry wrapper
    # -------------------------------------------------------

    async def _retrying(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        retry_on: Tuple[Type[Exception], ...] = RETRYABLE_ERRORS,
    ) -> T:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return await operation()
            except retry_on as exc:
                last_error = exc
                logger.warning(f"[PageStore] {name} attempt {attempt} failed: {exc}")
                await asyncio.sleep(self.retry_delay * attempt)

        raise PageStoreError(f"{name} failed after {self.max_retries} attempts") from last_error

    # -------------------------------------------------------
    # Single-record writes
    # -------------------------------------------------------

    async def add(self, record: CrawlRecord) -> bool:
        """Insert a record unless its URL is already known.

        Returns False for a duplicate; that is the dedup path, not an error.
        """

        async def _insert() -> bool:
            columns = _columns(record, RECORD_FIELDS)
            if columns["date"] is None:
                columns["date"] = timezone.now()
            try:
                async with in_transaction(self.connection_name) as conn:
                    await CrawlPage.create(using_db=conn, url=record.url, **columns)
            except IntegrityError:
                return False
            return True

        return await self._retrying("add", _insert)

    async def put(self, record: CrawlRecord, fields: Optional[Sequence[str]] = None) -> None:
        """Upsert a record.

        With ``fields`` only those fields of an existing row are overwritten;
        a missing row is always created from the whole record.
        """
        field_names = tuple(fields) if fields is not None else RECORD_FIELDS
        unknown = set(field_names) - set(RECORD_FIELDS)
        if unknown:
            raise ValueError(f"Unknown crawl record field(s): {', '.join(sorted(unknown))}")

        async def _upsert() -> None:
            async with in_transaction(self.connection_name) as conn:
                page = (
                    await CrawlPage.filter(url=record.url)
                    .using_db(conn)
                    .select_for_update()
                    .first()
                )
                if page is None:
                    columns = _columns(record, RECORD_FIELDS)
                    if columns["date"] is None:
                        columns["date"] = timezone.now()
                    await CrawlPage.create(using_db=conn, url=record.url, **columns)
                    return

                columns = _columns(record, field_names)
                if "date" in columns and columns["date"] is None:
                    columns["date"] = timezone.now()
                page.update_from_dict(columns)
                await page.save(using_db=conn, update_fields=list(columns))

        # a concurrent insert of the same URL raises IntegrityError; retried
        # as an update
        await self._retrying("put", _upsert, RETRYABLE_ERRORS + (IntegrityError,))

    async def get(self, url: str) -> Optional[CrawlRecord]:
        page = await CrawlPage.get_or_none(url=url)
        return CrawlRecord.from_page(page) if page else None

    # -------------------------------------------------------
    # Queue operations
    # -------------------------------------------------------

    async def _pop(
        self,
        name: str,
        query: Q,
        order: Sequence[str],
        updates: Dict[str, object],
        on_claim: Optional[Callable[[CrawlRecord], None]] = None,
    ) -> Optional[CrawlRecord]:
        async def _take() -> Optional[CrawlRecord]:
            async with in_transaction(self.connection_name) as conn:
                page = (
                    await CrawlPage.filter(query)
                    .using_db(conn)
                    .order_by(*order)
                    .select_for_update(skip_locked=True)
                    .first()
                )
                if page is None:
                    return None

                record = CrawlRecord.from_page(page)
                record.queue_priority = None
                if on_claim is not None:
                    # runs before the row leaves its old state
                    on_claim(record)

                page.update_from_dict({**updates, "date": timezone.now()})
                await page.save(using_db=conn, update_fields=[*updates, "date"])
                return record

        return await self._retrying(name, _take)

    async def pop_queue(self) -> Optional[CrawlRecord]:
        """Take the highest-priority frontier record and mark it FETCHING.

        Lowest queue_priority first, insertion order breaks ties. The
        priority is cleared in the same transaction, so no record can be
        handed out twice.
        """
        return await self._pop(
            "pop_queue",
            Q(queue_priority__isnull=False),
            ("queue_priority", "id"),
            {
                "queue_priority": None,
                "status": CrawlStatus.FETCHING,
                "content_type": FETCHING_CONTENT_TYPE,
            },
        )

    async def pop_fetched(
        self,
        content_type: str = HTML_CONTENT_TYPE,
        on_claim: Optional[Callable[[CrawlRecord], None]] = None,
    ) -> Optional[CrawlRecord]:
        """Take one fetched record of ``content_type`` and mark it PARSING.

        ``on_claim`` is called inside the transaction once a row is found,
        before the status change commits. It may run again if the
        transaction is retried.
        """
        return await self._pop(
            "pop_fetched",
            Q(status=CrawlStatus.OK, content_type=content_type),
            ("id",),
            {"status": CrawlStatus.PARSING},
            on_claim=on_claim,
        )

    async def count_fetched(self, content_type: str = HTML_CONTENT_TYPE) -> int:
        return await CrawlPage.filter(status=CrawlStatus.OK, content_type=content_type).count()

    # -------------------------------------------------------
    # Seeding / recovery
    # -------------------------------------------------------

    async def seed(self, urls: Iterable[str], *, reset: bool = False, priority: int = 0) -> int:
        """Add seed URLs to the frontier; ``reset`` wipes every record first."""
        if reset:
            await self.clear()

        added = 0
        for url in urls:
            if await self.add(CrawlRecord(url=url, queue_priority=priority)):
                added += 1
        logger.info(f"Seeded {added} URL(s) into the frontier")
        return added

    async def clear(self) -> int:
        async def _delete() -> int:
            async with in_transaction(self.connection_name) as conn:
                return await CrawlPage.all().using_db(conn).delete()

        deleted = await self._retrying("clear", _delete)
        logger.warning(f"Cleared {deleted} crawl record(s)")
        return deleted

    async def recover_in_flight(self, priority: int = 0) -> int:
        """Re-arm records left FETCHING or PARSING by an interrupted run."""

        async def _recover() -> int:
            now = timezone.now()
            async with in_transaction(self.connection_name) as conn:
                requeued = await CrawlPage.filter(status=CrawlStatus.FETCHING).using_db(conn).update(
                    status=CrawlStatus.FRESH,
                    queue_priority=priority,
                    content_type=None,
                    date=now,
                )
                reparse = await CrawlPage.filter(status=CrawlStatus.PARSING).using_db(conn).update(
                    status=CrawlStatus.OK,
                    date=now,
                )
            return requeued + reparse

        recovered = await self._retrying("recover_in_flight", _recover)
        if recovered:
            logger.info(f"Recovered {recovered} in-flight record(s) from a previous run")
        return recovered

    # -------------------------------------------------------
    # Tags
    # -------------------------------------------------------

    async def count_by_tag(self, tags: Sequence[str]) -> Dict[str, int]:
        counts = await asyncio.gather(*(CrawlPage.filter(tag=tag).count() for tag in tags))
        return dict(zip(tags, counts))

    async def iterate_by_tag(self, tag: str, batch_size: int = 100) -> AsyncIterator[CrawlRecord]:
        last_id = 0
        while True:
            batch = await CrawlPage.filter(tag=tag, id__gt=last_id).order_by("id").limit(batch_size)
            if not batch:
                return
            for page in batch:
                yield CrawlRecord.from_page(page)
            last_id = batch[-1].id

    async def reset_by_tag(self, tag: str, priority: int = 0) -> int:
        """Send every settled record carrying ``tag`` back to the frontier."""

        async def _reset() -> int:
            async with in_transaction(self.connection_name) as conn:
                return await (
                    CrawlPage.filter(tag=tag, status__not_in=list(IN_FLIGHT_STATUSES))
                    .using_db(conn)
                    .update(
                        status=CrawlStatus.FRESH,
                        queue_priority=priority,
                        content_type=None,
                        body=None,
                        raw_body=None,
                        original_url=None,
                        redirect_target_url=None,
                        date=timezone.now(),
                    )
                )

        count = await self._retrying("reset_by_tag", _reset)
        logger.info(f"Reset {count} record(s) tagged {tag!r}")
        return count

    # -------------------------------------------------------
    # Stats
    # -------------------------------------------------------

    async def stats(self, since: Optional[datetime] = None) -> StoreStats:
        if since is None:
            since = timezone.now() - timedelta(seconds=self.recent_window)

        done_query = Q(status__in=list(FINAL_STATUSES)) | Q(
            status=CrawlStatus.OK, content_type__not=HTML_CONTENT_TYPE
        )
        total, queued, done, updated = await asyncio.gather(
            CrawlPage.all().count(),
            CrawlPage.filter(queue_priority__isnull=False).count(),
            CrawlPage.filter(done_query).count(),
            CrawlPage.filter(date__gte=since).count(),
        )
        return StoreStats(
            total=total,
            queue_depth=queued,
            done_count=done,
            recently_updated_count=updated,
        )
