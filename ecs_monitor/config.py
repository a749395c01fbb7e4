from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # AWS (credentials come from the standard boto3 chain, not from here)
    aws_region: str = "us-east-1"
    aws_call_timeout_seconds: float = 30.0
    aws_connect_timeout_seconds: float = 10.0

    # Time-series store
    db_path: str = "data/ecs-monitoring.db"
    db_busy_timeout_seconds: float = 5.0

    # Report artifacts land in <reports_dir>/<yyyy-mm-dd>/<cluster>/
    reports_dir: str = "data/reports"

    # Collection (0 = collection trigger disabled)
    collection_interval_seconds: int = 300
    metrics_period_seconds: int = 300
    metrics_lookback_hours: int = 3
    metrics_concurrency: int = 4
    collect_tasks: bool = True

    # Report schedule (empty = report trigger disabled)
    report_schedule_cron: str = "0 0 * * *"
    schedule_timezone: str = "UTC"
    scheduler_max_instances: int = 10
    scheduler_enabled: bool = True
    report_daily_average_days: int = 7

    # Rendering
    chart_js_url: str = "https://cdn.jsdelivr.net/npm/chart.js"
    render_timeout_seconds: float = 60.0

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
