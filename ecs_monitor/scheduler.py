"""APScheduler integration for periodic collection and daily reports.

Uses one AsyncIOScheduler with two independent jobs: an IntervalTrigger for
collection ticks and a CronTrigger for per-cluster daily reports.  Firings of
the same job may overlap; each firing opens its own store connection.
"""

import contextlib
import logging
import sqlite3
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.cron import CronTrigger  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from ecs_monitor.collectors.aws import AWSClient, make_cloudwatch_client, make_ecs_client
from ecs_monitor.collectors.fanout import gather_or_cancel
from ecs_monitor.collectors.inventory import collect_inventory, collect_tasks
from ecs_monitor.collectors.metrics import collect_metrics_for_clusters
from ecs_monitor.config import Settings, get_settings
from ecs_monitor.observability.metrics import COLLECTION_CYCLES_TOTAL, COLLECTION_DURATION, REPORTS_TOTAL
from ecs_monitor.report.compiler import compile_reports
from ecs_monitor.report.renderer import RendererFactory, playwright_renderer_factory
from ecs_monitor.store.store import open_store

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None

COLLECTION_JOB_ID = "ecs_collection"
REPORT_JOB_ID = "ecs_daily_reports"


# ---------------------------------------------------------------------------
# Cycle bodies (also used by the one-shot scripts)
# ---------------------------------------------------------------------------


async def run_collection_cycle(
    ecs_client: AWSClient,
    cloudwatch_client: AWSClient,
    conn: sqlite3.Connection,
    settings: Settings,
    now: datetime | None = None,
) -> int:
    """Run one collection tick: inventory, then tasks, then metrics for every cluster.

    Returns:
        Number of clusters collected.

    Raises:
        ExternalAPIError, PersistenceError: The first per-cluster failure,
            after the remaining per-cluster work has been cancelled.
    """
    now = now or datetime.now(UTC)
    timeout = settings.aws_call_timeout_seconds

    clusters = await collect_inventory(ecs_client, conn, persist=True, now=now, timeout=timeout)
    if not clusters:
        return 0

    start = now - timedelta(hours=settings.metrics_lookback_hours)
    names = [c["cluster_name"] for c in clusters]

    if settings.collect_tasks:

        async def _collect_tasks(name: str) -> None:
            await collect_tasks(ecs_client, conn, name, persist=True, now=now, timeout=timeout)

        await gather_or_cancel(names, _collect_tasks, limit=settings.metrics_concurrency)

    await collect_metrics_for_clusters(
        cloudwatch_client,
        conn,
        names,
        concurrency=settings.metrics_concurrency,
        period_seconds=settings.metrics_period_seconds,
        start=start,
        end=now,
        persist=True,
        timeout=timeout,
    )
    logger.info("Collection tick finished for %d clusters", len(names))
    return len(names)


async def run_report_cycle(
    ecs_client: AWSClient,
    conn: sqlite3.Connection,
    settings: Settings,
    renderer_factory: RendererFactory,
    *,
    report_date: datetime | None = None,
    cluster_names: list[str] | None = None,
    trigger: str = "scheduled",
) -> dict[str, Path | None]:
    """Compile the daily report of every cluster (or only ``cluster_names``).

    Clusters are listed live without writing snapshots.  A failure for one
    cluster is logged and the next cluster is still compiled.
    """
    if cluster_names is None:
        clusters = await collect_inventory(ecs_client, persist=False, timeout=settings.aws_call_timeout_seconds)
        cluster_names = [c["cluster_name"] for c in clusters]
    if not cluster_names:
        logger.info("No clusters to report on")
        return {}

    results = await compile_reports(
        conn,
        cluster_names,
        trigger=trigger,
        reports_dir=Path(settings.reports_dir),
        renderer_factory=renderer_factory,
        report_date=report_date,
        chart_js_url=settings.chart_js_url,
        daily_average_days=settings.report_daily_average_days,
    )
    failed = [name for name, path in results.items() if path is None]
    if failed:
        logger.warning("Reports failed for %d of %d clusters: %s", len(failed), len(results), ", ".join(failed))
    else:
        logger.info("Reports compiled for %d clusters", len(results))
    return results


# ---------------------------------------------------------------------------
# Scheduled job wrappers
# ---------------------------------------------------------------------------


async def _scheduled_collection_job(ecs_client: AWSClient, cloudwatch_client: AWSClient) -> None:
    """Async job executed by the scheduler: one collection tick with metrics."""
    settings = get_settings()
    start = time.monotonic()
    try:
        with open_store(settings.db_path, settings.db_busy_timeout_seconds) as conn:
            await run_collection_cycle(ecs_client, cloudwatch_client, conn, settings)
        COLLECTION_CYCLES_TOTAL.labels(status="success").inc()
    except Exception:
        COLLECTION_CYCLES_TOTAL.labels(status="error").inc()
        logger.exception("Scheduled collection failed")
    finally:
        COLLECTION_DURATION.observe(time.monotonic() - start)


async def _scheduled_report_job(ecs_client: AWSClient, renderer_factory: RendererFactory) -> None:
    """Async job executed by the scheduler: compile every cluster's daily report."""
    settings = get_settings()
    try:
        with open_store(settings.db_path, settings.db_busy_timeout_seconds) as conn:
            await run_report_cycle(ecs_client, conn, settings, renderer_factory)
    except Exception:
        # Per-cluster failures are counted inside compile_reports; this is the cycle itself
        REPORTS_TOTAL.labels(trigger="scheduled", status="error").inc()
        logger.exception("Scheduled report run failed")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def start_scheduler(
    ecs_client: AWSClient | None = None,
    cloudwatch_client: AWSClient | None = None,
    renderer_factory: RendererFactory | None = None,
) -> AsyncIOScheduler | None:
    """Start the APScheduler with whichever triggers are configured.

    Must be called with a running event loop.  Clients default to boto3
    clients built from settings.
    """
    global _scheduler  # noqa: PLW0603

    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")
        return None
    if not settings.collection_interval_seconds and not settings.report_schedule_cron:
        logger.info("Scheduler has no triggers configured")
        return None

    ecs_client = ecs_client or make_ecs_client(settings)
    cloudwatch_client = cloudwatch_client or make_cloudwatch_client(settings)
    renderer_factory = renderer_factory or playwright_renderer_factory(settings.render_timeout_seconds)

    _scheduler = AsyncIOScheduler(timezone=settings.schedule_timezone)

    if settings.collection_interval_seconds > 0:
        _scheduler.add_job(
            _scheduled_collection_job,
            trigger=IntervalTrigger(seconds=settings.collection_interval_seconds),
            args=[ecs_client, cloudwatch_client],
            id=COLLECTION_JOB_ID,
            name="ECS metrics and inventory collection",
            max_instances=settings.scheduler_max_instances,
            coalesce=False,
            replace_existing=True,
        )
        logger.info("Collection scheduled every %ds", settings.collection_interval_seconds)

    if settings.report_schedule_cron:
        _scheduler.add_job(
            _scheduled_report_job,
            trigger=CronTrigger.from_crontab(settings.report_schedule_cron, timezone=settings.schedule_timezone),
            args=[ecs_client, renderer_factory],
            id=REPORT_JOB_ID,
            name="Daily ECS cluster reports",
            max_instances=settings.scheduler_max_instances,
            coalesce=False,
            replace_existing=True,
        )
        logger.info(
            "Reports scheduled with cron %r (%s)", settings.report_schedule_cron, settings.schedule_timezone
        )

    _scheduler.start()
    return _scheduler


def stop_scheduler() -> None:
    """Gracefully shut down the scheduler if it is running."""
    global _scheduler  # noqa: PLW0603

    if _scheduler is not None:
        with contextlib.suppress(Exception):
            _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
        _scheduler = None
