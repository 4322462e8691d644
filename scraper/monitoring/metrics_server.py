from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    generate_latest,
    Counter,
    Gauge,
    Histogram,
)

# -------------------------
# Fetch Metrics
# -------------------------

FETCHES = Counter(
    "scraper_fetches_total",
    "Finished fetches by outcome",
    ["outcome"],
)

FETCH_LATENCY = Histogram(
    "scraper_fetch_latency_seconds",
    "Time from dispatch to worker reply",
)

IN_FLIGHT = Gauge(
    "scraper_fetches_in_flight",
    "Requests waiting for a worker reply",
)

# -------------------------
# Parse Metrics
# -------------------------

PARSES = Counter(
    "scraper_parses_total",
    "Parsed pages by outcome",
    ["outcome"],
)

LINKS_ENQUEUED = Counter(
    "scraper_links_enqueued_total",
    "Newly discovered URLs added to the frontier",
)

# -------------------------
# Store Metrics
# -------------------------

QUEUE_DEPTH = Gauge(
    "scraper_queue_depth",
    "Number of URLs waiting in the frontier"
)

DONE_PAGES = Gauge(
    "scraper_done_pages",
    "Number of pages in a final state"
)


# -------------------------
# /metrics endpoint
# -------------------------

async def metrics_handler(request):
    data = generate_latest()

    # aiohttp rejects a content_type that carries a charset
    ctype = CONTENT_TYPE_LATEST.split(";")[0]

    return web.Response(
        body=data,
        content_type=ctype
    )


async def start_metrics_server(port=8000, host="0.0.0.0"):
    app = web.Application()
    app.router.add_get("/metrics", metrics_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()

    return runner, site
