import os

from loguru import logger
from tortoise import Tortoise

from scraper.utils.db_utils import to_tortoise_dsn


MODEL_MODULES = ["scraper.storage.models.page_model"]


def _ensure_sqlite_dir(db_url: str) -> None:
    if not db_url.startswith("sqlite://"):
        return
    path = db_url[len("sqlite://") :].split("?", 1)[0]
    if path and path != ":memory:":
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)


async def init_store(database_url: str, *, generate_schemas: bool = True) -> None:
    """
    Connect Tortoise to the page database and create the tables if needed.
    """
    db_url = to_tortoise_dsn(database_url)
    _ensure_sqlite_dir(db_url)

    logger.info("Initializing page store and ORM models...")

    await Tortoise.init(
        db_url=db_url,
        modules={"models": MODEL_MODULES},
    )

    if generate_schemas:
        await Tortoise.generate_schemas(safe=True)
        logger.info("Page store tables created or verified.")


async def close_store() -> None:
    await Tortoise.close_connections()
