"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # ── Postgres ─────────────────────────────────────────
    postgres_user: str = "receipts"
    postgres_password: str = "receipts_pw"
    postgres_db: str = "receipts"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url_override: str = ""

    # ── LLM ──────────────────────────────────────────────
    llm_provider: str = "mock"  # mock | openai | anthropic
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # ── Query engine ─────────────────────────────────────
    classifier_mode: str = "rules"  # rules | openai | anthropic
    store_timeout_seconds: float = 10.0
    default_top_n: int = 5
    max_top_n: int = 50
    anomaly_multiplier: float = 2.0
    anomaly_history_months: int = 3
    anomaly_scan_limit: int = 10
    anomaly_flag_new_vendors: bool = True

    # ── Result cache ─────────────────────────────────────
    cache_ttl_seconds: float = 300.0
    cache_max_bytes: int = 50 * 1024 * 1024
    cache_max_entries: int = 1000
    cache_sweep_interval_seconds: float = 30.0
    cache_sweep_batch_size: int = 100

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
