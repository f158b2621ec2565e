from pathlib import Path

import pytest

from etl.config import BASE_DIR, ImportConfig, ScraperConfig

_IMPORT_VARS = (
    "PG_DSN",
    "DATABASE_URL",
    "IMPORT_SOURCE_PATH",
    "IMPORT_BATCH_SIZE",
    "IMPORT_BASE_URL",
    "IMPORT_SECRET",
)
_SCRAPER_VARS = ("BROWSER_WS_ENDPOINT", "REBROWSER_API_KEY", "SCRAPER_LANES", "SCRAPER_HEADLESS")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _IMPORT_VARS + _SCRAPER_VARS:
        monkeypatch.delenv(name, raising=False)


def test_import_defaults():
    config = ImportConfig.from_env()
    assert config.batch_size == 10
    assert config.source_path == BASE_DIR / "data" / "search.json"
    assert config.dsn is None


def test_import_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/listings")
    monkeypatch.setenv("IMPORT_SOURCE_PATH", str(tmp_path / "feed.json"))
    monkeypatch.setenv("IMPORT_BATCH_SIZE", "25")
    monkeypatch.setenv("IMPORT_SECRET", "s3cret")

    config = ImportConfig.from_env()

    assert config.dsn == "postgresql://u:p@db/listings"
    assert config.source_path == Path(tmp_path / "feed.json")
    assert config.batch_size == 25
    assert config.secret == "s3cret"


@pytest.mark.parametrize("value", ["0", "-3", "ten"])
def test_import_rejects_bad_batch_size(monkeypatch, value):
    monkeypatch.setenv("IMPORT_BATCH_SIZE", value)
    with pytest.raises(ValueError, match="IMPORT_BATCH_SIZE"):
        ImportConfig.from_env()


def test_scraper_builds_rebrowser_endpoint(monkeypatch):
    monkeypatch.setenv("REBROWSER_API_KEY", "key-1")
    monkeypatch.setenv("SCRAPER_LANES", "0")
    monkeypatch.setenv("SCRAPER_HEADLESS", "false")

    config = ScraperConfig.from_env()

    assert config.ws_endpoint == "wss://ws.rebrowser.net/?apiKey=key-1"
    assert config.lanes == 1
    assert config.headless is False
    assert config.max_attempts == 25
