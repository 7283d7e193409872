from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest

from taxlots.config import AppSettings, config


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    monkeypatch.chdir(tmp_path)
    for name in ("DATABASE_PATH", "RATE_CACHE_DIR", "OPEN_EXCHANGE_RATES_APP_ID", "POLICY_FILE", "LOG_LEVEL"):
        monkeypatch.delenv(f"TAXLOTS_{name}", raising=False)
    config.cache_clear()
    yield
    config.cache_clear()


def test_defaults() -> None:
    settings = AppSettings()

    assert settings.database_path == Path("taxlots.db")
    assert settings.rate_cache_dir == Path(".cache")
    assert settings.open_exchange_rates_app_id == ""
    assert settings.policy_file is None
    assert settings.log_level == "INFO"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TAXLOTS_DATABASE_PATH", "/var/lib/taxlots/ledger.db")
    monkeypatch.setenv("TAXLOTS_POLICY_FILE", "policy.json")
    monkeypatch.setenv("TAXLOTS_LOG_LEVEL", "DEBUG")

    settings = config()

    assert settings.database_path == Path("/var/lib/taxlots/ledger.db")
    assert settings.policy_file == Path("policy.json")
    assert settings.log_level == "DEBUG"


def test_dotenv_file_is_read(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("TAXLOTS_OPEN_EXCHANGE_RATES_APP_ID=from-dotenv\nUNRELATED=1\n", encoding="utf-8")

    assert config().open_exchange_rates_app_id == "from-dotenv"


def test_config_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    first = config()
    monkeypatch.setenv("TAXLOTS_LOG_LEVEL", "ERROR")

    assert config() is first
    assert config().log_level == "INFO"
