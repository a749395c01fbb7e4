"""Shared pytest configuration and fixtures."""

import sqlite3
from collections.abc import Generator, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

import ecs_monitor.api.main  # noqa: F401  patch targets must exist before mock_settings patches them
from ecs_monitor.config import Settings, get_settings
from ecs_monitor.errors import RenderingError
from ecs_monitor.store.store import get_initialized_connection


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that hit real AWS or launch Chromium (requires credentials / playwright install)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest) -> Generator[None]:
    """Block .env loading so a developer's local config never leaks into tests.

    Sets Settings.model_config['env_file'] = None before each test (except e2e).
    """
    if "e2e" in request.keywords:
        yield
        return

    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings(tmp_path: Path) -> Generator[Any]:
    """Provide fake settings pointing the store and reports at tmp_path.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = type(
        "FakeSettings",
        (),
        {
            "aws_region": "us-east-1",
            "aws_call_timeout_seconds": 5.0,
            "aws_connect_timeout_seconds": 2.0,
            "db_path": str(tmp_path / "monitor.db"),
            "db_busy_timeout_seconds": 1.0,
            "reports_dir": str(tmp_path / "reports"),
            "collection_interval_seconds": 300,
            "metrics_period_seconds": 300,
            "metrics_lookback_hours": 3,
            "metrics_concurrency": 2,
            "collect_tasks": True,
            "report_schedule_cron": "0 0 * * *",
            "schedule_timezone": "UTC",
            "scheduler_max_instances": 10,
            "scheduler_enabled": False,
            "report_daily_average_days": 7,
            "chart_js_url": "https://cdn.test/chart.js",
            "render_timeout_seconds": 5.0,
        },
    )()
    with (
        patch("ecs_monitor.config.get_settings", return_value=fake_settings),
        patch("ecs_monitor.scheduler.get_settings", return_value=fake_settings),
        patch("ecs_monitor.api.main.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


@pytest.fixture
def store() -> Iterator[sqlite3.Connection]:
    """In-memory store with schema initialized."""
    conn = get_initialized_connection(":memory:")
    try:
        yield conn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Fake AWS clients
# ---------------------------------------------------------------------------

ACCOUNT_PREFIX = "arn:aws:ecs:us-east-1:123456789012"


def cluster_arn(name: str) -> str:
    return f"{ACCOUNT_PREFIX}:cluster/{name}"


class FakeEcsClient:
    """In-memory stand-in for a boto3 ECS client.

    ``clusters`` maps cluster name to ``{"services": [...], "tasks": [...]}``
    holding raw describe-call shapes.  ``errors`` maps an operation name, or
    ``"<operation>:<cluster>"``, to the exception that call raises.
    """

    def __init__(
        self,
        clusters: dict[str, dict[str, list[dict[str, Any]]]] | None = None,
        *,
        page_size: int | None = None,
        errors: dict[str, Exception] | None = None,
    ) -> None:
        self.clusters = clusters or {}
        self.page_size = page_size
        self.errors = errors or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def _record(self, operation: str, params: dict[str, Any]) -> None:
        self.calls.append((operation, params))
        cluster = params.get("cluster")
        for key in (f"{operation}:{cluster}", operation):
            if key in self.errors:
                raise self.errors[key]

    def _page(self, items: list[str], params: dict[str, Any], result_key: str) -> dict[str, Any]:
        if not self.page_size:
            return {result_key: items}
        start = int(params.get("nextToken") or 0)
        end = start + self.page_size
        page: dict[str, Any] = {result_key: items[start:end]}
        if end < len(items):
            page["nextToken"] = str(end)
        return page

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [params for op, params in self.calls if op == operation]

    @staticmethod
    def _arn(item: dict[str, Any], key: str, index: int) -> str:
        return item.get(key) or f"arn:fake:{key}/{index}"

    def list_clusters(self, **params: Any) -> dict[str, Any]:
        self._record("list_clusters", params)
        return self._page([cluster_arn(name) for name in self.clusters], params, "clusterArns")

    def describe_clusters(self, **params: Any) -> dict[str, Any]:
        self._record("describe_clusters", params)
        described = []
        for arn in params["clusters"]:
            name = arn.rsplit("/", 1)[-1]
            data = self.clusters[name]
            described.append(
                {
                    "clusterName": name,
                    "clusterArn": arn,
                    "status": "ACTIVE",
                    "registeredContainerInstancesCount": 2,
                    "runningTasksCount": len(data.get("tasks", [])),
                    "pendingTasksCount": 0,
                    "activeServicesCount": len(data.get("services", [])),
                }
            )
        return {"clusters": described, "failures": []}

    def list_services(self, **params: Any) -> dict[str, Any]:
        self._record("list_services", params)
        services = self.clusters[params["cluster"]].get("services", [])
        arns = [self._arn(s, "serviceArn", i) for i, s in enumerate(services)]
        return self._page(arns, params, "serviceArns")

    def describe_services(self, **params: Any) -> dict[str, Any]:
        self._record("describe_services", params)
        services = self.clusters[params["cluster"]].get("services", [])
        wanted = set(params["services"])
        return {
            "services": [s for i, s in enumerate(services) if self._arn(s, "serviceArn", i) in wanted],
            "failures": [],
        }

    def list_tasks(self, **params: Any) -> dict[str, Any]:
        self._record("list_tasks", params)
        tasks = self.clusters[params["cluster"]].get("tasks", [])
        arns = [self._arn(t, "taskArn", i) for i, t in enumerate(tasks)]
        return self._page(arns, params, "taskArns")

    def describe_tasks(self, **params: Any) -> dict[str, Any]:
        self._record("describe_tasks", params)
        tasks = self.clusters[params["cluster"]].get("tasks", [])
        wanted = set(params["tasks"])
        return {
            "tasks": [t for i, t in enumerate(tasks) if self._arn(t, "taskArn", i) in wanted],
            "failures": [],
        }


class FakeCloudWatchClient:
    """In-memory stand-in for a boto3 CloudWatch client.

    ``datapoints`` maps ``(cluster, series id)`` to ``[(timestamp, value), ...]``.
    ``pages`` overrides the response sequence entirely (for NextToken tests).
    """

    def __init__(
        self,
        datapoints: dict[tuple[str, str], list[tuple[datetime | None, float | None]]] | None = None,
        *,
        pages: list[dict[str, Any]] | None = None,
        errors: dict[str, Exception] | None = None,
    ) -> None:
        self.datapoints = datapoints or {}
        self.pages = list(pages) if pages is not None else None
        self.errors = errors or {}
        self.calls: list[dict[str, Any]] = []

    def get_metric_data(self, **params: Any) -> dict[str, Any]:
        self.calls.append(params)
        cluster = params["MetricDataQueries"][0]["MetricStat"]["Metric"]["Dimensions"][0]["Value"]
        for key in (f"get_metric_data:{cluster}", "get_metric_data"):
            if key in self.errors:
                raise self.errors[key]
        if self.pages is not None:
            return self.pages.pop(0)

        results = []
        for query in params["MetricDataQueries"]:
            points = self.datapoints.get((cluster, query["Id"]), [])
            results.append(
                {
                    "Id": query["Id"],
                    "Label": query["MetricStat"]["Metric"]["MetricName"],
                    "Timestamps": [ts for ts, _ in points],
                    "Values": [value for _, value in points],
                    "StatusCode": "Complete",
                }
            )
        return {"MetricDataResults": results}


# ---------------------------------------------------------------------------
# Fake renderer
# ---------------------------------------------------------------------------


class FakeRenderer:
    """Records each rendering step and writes placeholder artifacts."""

    def __init__(self, fail_on: str | None = None) -> None:
        self.fail_on = fail_on
        self.steps: list[str] = []
        self.loaded_html: str | None = None
        self.closed = False

    async def __aenter__(self) -> "FakeRenderer":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _step(self, name: str) -> None:
        self.steps.append(name)
        if self.fail_on == name:
            raise RenderingError(name, "simulated failure")

    async def load(self, html_path: Path) -> None:
        self._step("load")
        self.loaded_html = html_path.read_text(encoding="utf-8")

    async def wait_ready(self) -> None:
        self._step("wait_ready")

    async def capture_region(self, selector: str, output_path: Path) -> None:
        self._step(f"capture {selector}")
        output_path.write_bytes(b"\x89PNG fake")

    async def capture_pdf(self, output_path: Path) -> None:
        self._step("pdf")
        output_path.write_bytes(b"%PDF-1.4 fake")

    async def close(self) -> None:
        self.closed = True


class FakeRendererFactory:
    """Renderer factory handing out FakeRenderers; ``failures`` is consumed per call."""

    def __init__(self, failures: list[str | None] | None = None) -> None:
        self.failures = list(failures or [])
        self.instances: list[FakeRenderer] = []

    def __call__(self) -> FakeRenderer:
        renderer = FakeRenderer(fail_on=self.failures.pop(0) if self.failures else None)
        self.instances.append(renderer)
        return renderer


@pytest.fixture
def renderer_factory() -> FakeRendererFactory:
    return FakeRendererFactory()
