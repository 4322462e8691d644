import os
import sys

from loguru import logger

_logger_initialized = False
_sink_ids: list[int] = []

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | worker={extra[worker_id]} | {message}"


def setup_logger(
    log_level: str = "INFO",
    log_path: str | None = "logs/scraper.log",
    worker_id: str | None = None,
):
    """Install the file and console sinks once per process and return a bound logger."""
    global _logger_initialized, _sink_ids

    resolved_worker_id = worker_id or os.getenv("WORKER_ID") or str(os.getpid())

    if not _logger_initialized:
        logger.remove()
        logger.configure(extra={"worker_id": resolved_worker_id})

        sinks = []
        if log_path:
            log_dir = os.path.dirname(log_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            sinks.append(
                logger.add(
                    log_path,
                    rotation="10 MB",
                    retention="7 days",
                    level=log_level,
                    format=LOG_FORMAT,
                    enqueue=True,
                )
            )
        sinks.append(
            logger.add(
                sys.stderr,
                colorize=True,
                level=log_level,
                format=LOG_FORMAT,
            )
        )

        _sink_ids = sinks
        _logger_initialized = True

    return logger.bind(worker_id=resolved_worker_id)


def reset_logger() -> None:
    """Drop the sinks installed by setup_logger so it can run again."""
    global _logger_initialized, _sink_ids

    for sink_id in _sink_ids:
        logger.remove(sink_id)
    _sink_ids = []
    _logger_initialized = False
