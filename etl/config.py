"""Environment-driven configuration for the importer and the valuation scraper."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_SOURCE_PATH = "data/search.json"
DEFAULT_VALUATION_SITE = "https://www.property.com.au"
REBROWSER_WS_TEMPLATE = "wss://ws.rebrowser.net/?apiKey={api_key}"


def load_env() -> None:
    """Load BASE_DIR/.env without overriding variables already set."""
    load_dotenv(BASE_DIR / ".env")


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class ImportConfig:
    """Settings for import jobs. `batch_size` only seeds newly created jobs."""

    dsn: Optional[str] = None
    source_path: Path = Path(DEFAULT_SOURCE_PATH)
    batch_size: int = 10
    image_size: str = "800x600"
    base_url: Optional[str] = None
    secret: Optional[str] = None
    dispatch_timeout: float = 10.0
    stale_after: float = 900.0

    @classmethod
    def from_env(cls) -> ImportConfig:
        source = Path(os.getenv("IMPORT_SOURCE_PATH", DEFAULT_SOURCE_PATH))
        if not source.is_absolute():
            source = BASE_DIR / source
        batch_size = _int("IMPORT_BATCH_SIZE", 10)
        if batch_size <= 0:
            raise ValueError("IMPORT_BATCH_SIZE must be positive")
        return cls(
            dsn=os.getenv("PG_DSN") or os.getenv("DATABASE_URL"),
            source_path=source,
            batch_size=batch_size,
            image_size=os.getenv("IMPORT_IMAGE_SIZE", "800x600"),
            base_url=os.getenv("IMPORT_BASE_URL") or None,
            secret=os.getenv("IMPORT_SECRET") or None,
            dispatch_timeout=_float("IMPORT_DISPATCH_TIMEOUT", 10.0),
            stale_after=_float("IMPORT_STALE_AFTER", 900.0),
        )


@dataclass
class ScraperConfig:
    """Settings for the valuation scraper: lanes, pacing, retry tiers and browser."""

    lanes: int = 3
    requests_per_minute: float = 20.0
    max_attempts: int = 25
    rate_limit_delay: float = 30.0
    server_error_delay: float = 15.0
    connection_abort_delay: float = 3600.0
    backoff_base: float = 5.0
    backoff_cap: float = 120.0
    ws_endpoint: Optional[str] = None
    headless: bool = True
    site_url: str = DEFAULT_VALUATION_SITE

    @classmethod
    def from_env(cls) -> ScraperConfig:
        ws_endpoint = os.getenv("BROWSER_WS_ENDPOINT") or None
        if ws_endpoint is None and (api_key := os.getenv("REBROWSER_API_KEY")):
            ws_endpoint = REBROWSER_WS_TEMPLATE.format(api_key=api_key)
        return cls(
            lanes=max(1, _int("SCRAPER_LANES", 3)),
            requests_per_minute=_float("SCRAPER_REQUESTS_PER_MINUTE", 20.0),
            max_attempts=max(1, _int("SCRAPER_MAX_ATTEMPTS", 25)),
            rate_limit_delay=_float("SCRAPER_RATE_LIMIT_DELAY", 30.0),
            server_error_delay=_float("SCRAPER_SERVER_ERROR_DELAY", 15.0),
            connection_abort_delay=_float("SCRAPER_CONNECTION_ABORT_DELAY", 3600.0),
            backoff_base=_float("SCRAPER_BACKOFF_BASE", 5.0),
            backoff_cap=_float("SCRAPER_BACKOFF_CAP", 120.0),
            ws_endpoint=ws_endpoint,
            headless=_bool("SCRAPER_HEADLESS", True),
            site_url=os.getenv("VALUATION_SITE_URL", DEFAULT_VALUATION_SITE),
        )
