from functools import lru_cache
import json
import logging
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    # Resolve to backend/.env so `uvicorn --app-dir backend` works from any cwd.
    model_config = SettingsConfigDict(env_file=str(BACKEND_ENV_FILE), env_file_encoding="utf-8")

    project_name: str = "ScheduleFlow"
    api_prefix: str = "/api"
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./scheduleflow.db"

    remote_api_base_url: str = "http://localhost:8000/api"
    remote_api_token: str | None = None
    remote_api_timeout_seconds: float = 30.0

    draft_storage_key: str = "schedule_creation_autosave"
    draft_max_age_minutes: int = 24 * 60
    hidden_preview_max_minutes: int = 10

    default_periods_per_day: int = 6
    default_break_periods: list[int] = [3]
    default_break_duration: int = 15
    default_period_duration: int = 45
    default_working_days: list[str] = ["sunday", "monday", "tuesday", "wednesday", "thursday"]
    morning_start_time: str = "08:00:00"
    evening_start_time: str = "14:00:00"
    generation_window_months: int = 6
    fetch_diagnostics_on_failure: bool = True

    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "tauri://localhost",
    ]

    @field_validator("cors_origins", "default_working_days", mode="before")
    @classmethod
    def split_string_list(cls, value: str | list[str]) -> list[str]:
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

    @field_validator("default_break_periods", mode="before")
    @classmethod
    def split_break_periods(cls, value: str | list[int]) -> list[int]:
        if isinstance(value, str):
            stripped = value.strip().strip("[]")
            return [int(item) for item in stripped.split(",") if item.strip()]
        return value

    @field_validator("remote_api_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
