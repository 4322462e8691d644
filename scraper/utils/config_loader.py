import os
from typing import Any, Dict, List, Optional

import yaml

from pydantic_settings import BaseSettings, SettingsConfigDict

from scraper.utils.env_loader import load_environment


DEFAULT_USER_AGENT = "ScraperBot/1.0"
ENV_PREFIX = "SCRAPER_"
CONFIG_PATH = os.path.join(os.path.dirname(__file__), "../config/config.yaml")


class Config(BaseSettings):
    database_url: str = "sqlite://data/scraper.sqlite3"
    origin: str = "http://localhost:8080"
    seed_urls: List[str] = ["/"]

    # fetch scheduling
    parallel: int = 4
    delay_ms: int = 666
    worker_count: int = 1
    request_timeout_ms: int = 9999
    user_agent: str = DEFAULT_USER_AGENT

    # frontier exhaustion
    max_empty_pops: int = 10
    idle_delay_ms: int = 500

    # parse stage
    link_selector: str = "a[href]"
    parse_content_type: str = "text/html"

    # store
    transaction_retries: int = 5
    recent_window_seconds: float = 60.0

    log_level: str = "INFO"
    log_path: Optional[str] = "logs/scraper.log"
    metrics_port: int = 8000

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, env_file=".env", extra="ignore")


def _load_yaml_config(path: Optional[str] = None) -> Dict[str, Any]:
    config_path = path or os.getenv(f"{ENV_PREFIX}CONFIG_FILE") or CONFIG_PATH
    if not os.path.exists(config_path):
        return {}

    with open(config_path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(path: Optional[str] = None) -> Config:
    """Build the configuration: environment, then config file, then defaults."""
    load_environment()
    file_data = _load_yaml_config(path)
    file_settings: Dict[str, Any] = file_data.get("scraper") or {}

    # init kwargs beat the environment in BaseSettings, so only pass file
    # values the environment does not already set
    overrides = {
        key: value
        for key, value in file_settings.items()
        if f"{ENV_PREFIX}{key.upper()}" not in os.environ
    }

    return Config(**overrides)
