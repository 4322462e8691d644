import pytest

from scraper.monitoring.metrics_server import FETCHES, QUEUE_DEPTH, metrics_handler


@pytest.mark.asyncio
async def test_metrics_handler_exposes_scraper_metrics():
    FETCHES.labels(outcome="ok").inc()
    QUEUE_DEPTH.set(7)

    response = await metrics_handler(None)
    text = response.body.decode()

    assert response.content_type == "text/plain"
    assert 'scraper_fetches_total{outcome="ok"}' in text
    assert "scraper_queue_depth 7.0" in text
