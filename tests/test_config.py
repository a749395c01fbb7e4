"""Tests for environment-driven settings."""

import pytest

from ecs_monitor.config import Settings, get_settings


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for var in ("COLLECTION_INTERVAL_SECONDS", "REPORT_SCHEDULE_CRON", "SCHEDULER_MAX_INSTANCES"):
            monkeypatch.delenv(var, raising=False)

        settings = Settings()

        assert settings.collection_interval_seconds == 300
        assert settings.report_schedule_cron == "0 0 * * *"
        assert settings.schedule_timezone == "UTC"
        assert settings.scheduler_max_instances == 10
        assert settings.report_daily_average_days == 7

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AWS_REGION", "eu-west-1")
        monkeypatch.setenv("METRICS_CONCURRENCY", "8")
        monkeypatch.setenv("COLLECT_TASKS", "false")

        settings = Settings()

        assert settings.aws_region == "eu-west-1"
        assert settings.metrics_concurrency == 8
        assert settings.collect_tasks is False

    def test_get_settings_is_cached(self) -> None:
        assert get_settings() is get_settings()
