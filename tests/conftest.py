import os
import sys
from pathlib import Path

import pytest
from tortoise import Tortoise

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from scraper.storage.page_store import PageStore
from scraper.storage.store_init import init_store


@pytest.fixture(autouse=True)
def clean_scraper_environment(monkeypatch):
    """Run every test against the built-in defaults."""

    # Clear scraper variables so tests only see values they set themselves
    # via monkeypatch or a custom env file.
    for key in list(os.environ.keys()):
        if key.startswith("SCRAPER_"):
            monkeypatch.delenv(key, raising=False)

    yield

    # Clean up to avoid leaking state between tests.
    for key in list(os.environ.keys()):
        if key.startswith("TEST_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
async def store():
    await init_store("sqlite://:memory:")
    try:
        yield PageStore(retry_delay=0.01)
    finally:
        await Tortoise.close_connections()
