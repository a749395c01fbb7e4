"""Daily per-cluster report compiler.

Reads one cluster's last 24 hours from the store, writes the raw snapshot as
JSON, renders an HTML page with Chart.js charts, and drives a headless
renderer to rasterize the charts and print the page to PDF.

Artifacts are produced in a hidden staging directory and only moved to
``<reports_dir>/<yyyy-mm-dd>/<cluster>/`` once every step has succeeded.  The
report record appended afterwards is the completion marker: a failure at any
step leaves neither a published directory nor a record.
"""

import json
import logging
import re
import shutil
import sqlite3
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing_extensions import TypedDict
from uuid import uuid4

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ecs_monitor.observability.metrics import REPORT_DURATION, REPORTS_TOTAL
from ecs_monitor.report.renderer import RendererFactory
from ecs_monitor.store.models import DailyAggregate, MetricPoint, ServiceSnapshot, TaskSnapshot
from ecs_monitor.store.store import (
    format_timestamp,
    get_daily_aggregates,
    get_latest_services,
    get_points_in_range,
    get_tasks_in_window,
    save_report_record,
)

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
REPORT_TEMPLATE = "report.html.j2"
DEFAULT_CHART_JS_URL = "https://cdn.jsdelivr.net/npm/chart.js"
REPORT_WINDOW = timedelta(hours=24)

REPORT_JSON = "report-data.json"
REPORT_HTML = "report.html"
REPORT_PDF = "full-report.pdf"
CHART_CAPTURES: tuple[tuple[str, str], ...] = (
    ("#cpuChart", "cpu-chart.png"),
    ("#memoryChart", "memory-chart.png"),
    ("#dailyAvgChart", "daily-avg-chart.png"),
)
ARTIFACT_NAMES: tuple[str, ...] = (REPORT_JSON, REPORT_HTML, *(name for _, name in CHART_CAPTURES), REPORT_PDF)

_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(enabled_extensions=("html", "j2")),
    keep_trailing_newline=True,
)


# ---------------------------------------------------------------------------
# Structured data types
# ---------------------------------------------------------------------------


class DailyAverages(TypedDict):
    cpu: list[DailyAggregate]
    memory: list[DailyAggregate]


class ReportMetrics(TypedDict):
    cpu: list[MetricPoint]
    memory: list[MetricPoint]
    cpu_reservation: list[MetricPoint]
    memory_reservation: list[MetricPoint]
    daily_averages: DailyAverages


class ReportData(TypedDict):
    cluster_name: str
    report_date: str  # YYYY-MM-DD
    generated_at: str
    window_start: str
    window_end: str
    metrics: ReportMetrics
    services: list[ServiceSnapshot]
    tasks: list[TaskSnapshot]


# ---------------------------------------------------------------------------
# Data assembly
# ---------------------------------------------------------------------------


def build_report_data(
    conn: sqlite3.Connection,
    cluster_name: str,
    report_date: datetime,
    daily_average_days: int = 7,
) -> ReportData:
    """Read everything the report needs for the 24 hours ending at ``report_date``."""
    window_end = format_timestamp(report_date)
    window_start = format_timestamp(report_date - REPORT_WINDOW)

    def _series(metric_name: str) -> list[MetricPoint]:
        return get_points_in_range(conn, cluster_name, metric_name, window_start, window_end)

    metrics = ReportMetrics(
        cpu=_series("cpuUtilization"),
        memory=_series("memoryUtilization"),
        cpu_reservation=_series("cpuReservation"),
        memory_reservation=_series("memoryReservation"),
        daily_averages=DailyAverages(
            cpu=get_daily_aggregates(conn, cluster_name, "cpuUtilization", daily_average_days, now=report_date),
            memory=get_daily_aggregates(conn, cluster_name, "memoryUtilization", daily_average_days, now=report_date),
        ),
    )
    return ReportData(
        cluster_name=cluster_name,
        report_date=window_end[:10],
        generated_at=format_timestamp(datetime.now(UTC)),
        window_start=window_start,
        window_end=window_end,
        metrics=metrics,
        services=get_latest_services(conn, cluster_name),
        tasks=get_tasks_in_window(conn, cluster_name, window_start, window_end),
    )


def _chart_data(report: ReportData) -> dict[str, object]:
    """Literal labels/values the page needs to draw its three charts."""
    metrics = report["metrics"]
    cpu_by_day = {d["day"]: d["average_value"] for d in metrics["daily_averages"]["cpu"]}
    memory_by_day = {d["day"]: d["average_value"] for d in metrics["daily_averages"]["memory"]}
    days = sorted(cpu_by_day.keys() | memory_by_day.keys())
    return {
        "cpu": {
            "labels": [p["timestamp"][11:16] for p in metrics["cpu"]],
            "values": [p["value"] for p in metrics["cpu"]],
        },
        "memory": {
            "labels": [p["timestamp"][11:16] for p in metrics["memory"]],
            "values": [p["value"] for p in metrics["memory"]],
        },
        "daily": {
            "labels": days,
            "cpu": [cpu_by_day.get(day) for day in days],
            "memory": [memory_by_day.get(day) for day in days],
        },
    }


def render_report_html(
    report: ReportData,
    *,
    chart_js_url: str = DEFAULT_CHART_JS_URL,
    daily_average_days: int = 7,
) -> str:
    """Render the self-contained report page (data embedded, Chart.js from ``chart_js_url``)."""
    template = _env.get_template(REPORT_TEMPLATE)
    return template.render(
        report=report,
        charts=_chart_data(report),
        chart_js_url=chart_js_url,
        daily_average_days=daily_average_days,
    )


# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------


def _safe_segment(name: str) -> str:
    """Make a cluster name safe to use as one path segment."""
    cleaned = re.sub(r"[^A-Za-z0-9_.-]", "_", name).strip(".")
    return cleaned or "_"


def report_directory(reports_dir: Path, report_date: str, cluster_name: str) -> Path:
    """Final artifact directory for one cluster's report on one date."""
    return reports_dir / report_date / _safe_segment(cluster_name)


def _publish(staging: Path, final_dir: Path) -> None:
    """Move a completed staging directory into place, replacing an older run."""
    previous: Path | None = None
    if final_dir.exists():
        previous = final_dir.with_name(f".{final_dir.name}.old-{uuid4().hex[:8]}")
        final_dir.rename(previous)
    try:
        staging.rename(final_dir)
    except OSError:
        if previous is not None:
            previous.rename(final_dir)
        raise
    if previous is not None:
        shutil.rmtree(previous, ignore_errors=True)


# ---------------------------------------------------------------------------
# Top-level entry points
# ---------------------------------------------------------------------------


async def compile_report(
    conn: sqlite3.Connection,
    cluster_name: str,
    *,
    reports_dir: Path,
    renderer_factory: RendererFactory,
    report_date: datetime | None = None,
    chart_js_url: str = DEFAULT_CHART_JS_URL,
    daily_average_days: int = 7,
) -> Path:
    """Compile one cluster's daily report and return its artifact directory.

    Args:
        conn: Store connection used for every read and for the record write.
        cluster_name: Cluster to report on.
        reports_dir: Root of the ``<date>/<cluster>/`` artifact tree.
        renderer_factory: Produces a fresh renderer context for this report.
        report_date: End of the 24-hour window. Defaults to now (UTC).
        chart_js_url: Script URL the HTML page loads Chart.js from.
        daily_average_days: Width of the daily-average comparison.

    Raises:
        PersistenceError: A store read or the record write failed.
        RenderingError: The headless browser failed.
        OSError: Writing or publishing artifacts failed.
    """
    when = report_date or datetime.now(UTC)
    report = build_report_data(conn, cluster_name, when, daily_average_days)
    final_dir = report_directory(reports_dir, report["report_date"], cluster_name)
    final_dir.parent.mkdir(parents=True, exist_ok=True)
    staging = final_dir.with_name(f".{final_dir.name}.partial-{uuid4().hex[:8]}")
    staging.mkdir()

    logger.info("Compiling report for %s on %s", cluster_name, report["report_date"])
    try:
        (staging / REPORT_JSON).write_text(json.dumps(report, indent=2), encoding="utf-8")
        html_path = staging / REPORT_HTML
        html_path.write_text(
            render_report_html(report, chart_js_url=chart_js_url, daily_average_days=daily_average_days),
            encoding="utf-8",
        )

        async with renderer_factory() as renderer:
            await renderer.load(html_path)
            await renderer.wait_ready()
            for selector, filename in CHART_CAPTURES:
                await renderer.capture_region(selector, staging / filename)
            await renderer.capture_pdf(staging / REPORT_PDF)

        _publish(staging, final_dir)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    save_report_record(
        conn,
        report_date=report["report_date"],
        cluster_name=cluster_name,
        report_path=str(final_dir),
        json_payload=json.dumps(report),
    )
    logger.info("Report for %s written to %s", cluster_name, final_dir)
    return final_dir


async def compile_reports(
    conn: sqlite3.Connection,
    cluster_names: list[str],
    *,
    trigger: str = "scheduled",
    **kwargs: object,
) -> dict[str, Path | None]:
    """Compile reports for several clusters, one at a time.

    A failure for one cluster is logged and counted, then the loop moves on.

    Returns:
        Mapping of cluster name to its artifact directory, or None on failure.
    """
    results: dict[str, Path | None] = {}
    for name in cluster_names:
        start = time.monotonic()
        try:
            results[name] = await compile_report(conn, name, **kwargs)  # type: ignore[arg-type]
            REPORTS_TOTAL.labels(trigger=trigger, status="success").inc()
        except Exception:
            results[name] = None
            REPORTS_TOTAL.labels(trigger=trigger, status="error").inc()
            logger.exception("Report compilation failed for cluster %s", name)
        finally:
            REPORT_DURATION.observe(time.monotonic() - start)
    return results
