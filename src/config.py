from __future__ import annotations

from functools import cache
from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ARTIFACTS_DIR = PROJECT_ROOT / "artifacts"
DB_FILE = ARTIFACTS_DIR / "portfolio.db"


class AppSettings(BaseSettings):
    db_file: Path = DB_FILE
    reporting_currency: str = "USD"
    db_lock_timeout: float = 0.0
    echo_sql: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="PORTFOLIO_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("reporting_currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("reporting_currency must be non-empty")
        return value

    @field_validator("db_lock_timeout")
    @classmethod
    def _non_negative_timeout(cls, value: float) -> float:
        if value < 0:
            raise ValueError("db_lock_timeout must be >= 0")
        return value


@cache
def config() -> AppSettings:
    return AppSettings()
