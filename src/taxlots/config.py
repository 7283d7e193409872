from __future__ import annotations

from functools import cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    database_path: Path = Path("taxlots.db")
    rate_cache_dir: Path = Path(".cache")
    open_exchange_rates_app_id: str = ""
    policy_file: Path | None = None
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="TAXLOTS_", env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
