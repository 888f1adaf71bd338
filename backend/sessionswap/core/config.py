from functools import lru_cache
import json
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    # Resolve to backend/.env so `uvicorn --app-dir backend` works from any cwd.
    model_config = SettingsConfigDict(env_file=str(BACKEND_ENV_FILE), env_file_encoding="utf-8", extra="ignore")

    project_name: str = "SessionSwap API"
    api_prefix: str = "/api"

    database_url: str = "sqlite:///./sessionswap.db"
    database_echo: bool = False

    log_level: str = "INFO"

    # Weekly class templates store a local time-of-day in this zone.
    schedule_timezone: str = "UTC"

    # Capacity used for one-off meetings that have no class template behind them.
    # Pending product confirmation; keep configurable rather than inlined.
    standalone_meeting_capacity: int = 5
    # Used when a meeting references a template that can no longer be loaded.
    template_meeting_fallback_capacity: int = 10
    alternatives_limit: int = 20
    lock_timeout_seconds: float = 10.0

    max_request_size_bytes: int = 1_000_000
    security_enable_hsts: bool = False
    security_hsts_max_age_seconds: int = 31536000

    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_cors_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                try:
                    parsed = json.loads(stripped)
                    if isinstance(parsed, list):
                        return [str(item).strip() for item in parsed if str(item).strip()]
                except json.JSONDecodeError:
                    pass
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("standalone_meeting_capacity", "template_meeting_fallback_capacity", "alternatives_limit")
    @classmethod
    def require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
