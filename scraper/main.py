import asyncio
import signal

from loguru import logger

# -------------------------------
# INTERNAL IMPORTS
# -------------------------------
from scraper.fetch.pool import FetchWorkerPool
from scraper.monitoring.metrics_server import DONE_PAGES, QUEUE_DEPTH, start_metrics_server
from scraper.parsing.link_extractor import LinkExtractor
from scraper.rate_limiter import RateLimiter
from scraper.scheduler import CrawlScheduler
from scraper.storage.page_store import PageStore
from scraper.storage.store_init import close_store, init_store
from scraper.utils.config_loader import Config, load_config
from scraper.utils.env_loader import load_environment
from scraper.utils.logger import setup_logger


STATS_INTERVAL_SECONDS = 2


# -------------------------------
# STORE METRIC MONITOR TASK
# -------------------------------
async def monitor_store(store: PageStore):
    while True:
        try:
            stats = await store.stats()
            QUEUE_DEPTH.set(stats.queue_depth)
            DONE_PAGES.set(stats.done_count)
            logger.debug(
                f"Store: total={stats.total} queued={stats.queue_depth} "
                f"done={stats.done_count} recent={stats.recently_updated_count}"
            )
        except Exception as e:
            logger.error(f"Store monitor error: {e}")
        await asyncio.sleep(STATS_INTERVAL_SECONDS)


def build_scheduler(config: Config, store: PageStore) -> CrawlScheduler:
    pool = FetchWorkerPool(
        config.origin,
        worker_count=config.worker_count,
        request_timeout_ms=config.request_timeout_ms,
        user_agent=config.user_agent,
    )
    limiter = RateLimiter(config.parallel, config.delay_ms)
    extractor = LinkExtractor(config.origin, selector=config.link_selector)
    return CrawlScheduler(
        store,
        pool,
        limiter,
        extractor,
        max_empty_pops=config.max_empty_pops,
        idle_delay_ms=config.idle_delay_ms,
        parse_content_type=config.parse_content_type,
    )


# -------------------------------
# MAIN APPLICATION
# -------------------------------
async def main() -> None:
    load_environment()
    config = load_config()
    setup_logger(config.log_level, config.log_path)

    logger.info(f"Starting scraper for {config.origin}...")

    metrics_runner = None

    await init_store(config.database_url)
    store = PageStore(
        max_retries=config.transaction_retries,
        recent_window=config.recent_window_seconds,
    )
    await store.recover_in_flight()
    await store.seed(config.seed_urls)

    scheduler = build_scheduler(config, store)

    # ---- Metrics Server ----
    metrics_runner, _ = await start_metrics_server(port=config.metrics_port)

    # ---- Store Metric Monitor ----
    monitor_task = asyncio.create_task(monitor_store(store))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, scheduler.stop)

    try:
        summary = await scheduler.run()
        logger.info(
            f"Done: fetched={summary.fetched} errors={summary.fetch_errors} "
            f"no_response={summary.no_response} parsed={summary.parsed} "
            f"new_links={summary.links_enqueued}"
        )
    finally:
        monitor_task.cancel()
        await asyncio.gather(monitor_task, return_exceptions=True)

        if metrics_runner is not None:
            await metrics_runner.shutdown()
            await metrics_runner.cleanup()

        await close_store()


# -------------------------------
# ENTRYPOINT
# -------------------------------
def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
