"""FastAPI query surface for the ECS monitor.

Read-only: every endpoint is either a store read or a live, non-persisting
call to the collectors.  The lifespan builds the boto3 clients once and runs
the collection/report scheduler alongside the API.
"""

import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from ecs_monitor.collectors.aws import AWSClient, call_aws, make_cloudwatch_client, make_ecs_client
from ecs_monitor.collectors.inventory import ClusterView, collect_inventory
from ecs_monitor.collectors.metrics import DEFAULT_PERIOD_SECONDS, MetricsResult, collect_metrics
from ecs_monitor.config import get_settings
from ecs_monitor.errors import ExternalAPIError, PersistenceError
from ecs_monitor.observability.metrics import APP_INFO, COMPONENT_HEALTHY, REQUEST_DURATION, REQUESTS_TOTAL
from ecs_monitor.scheduler import start_scheduler, stop_scheduler
from ecs_monitor.store.models import (
    DailyAggregate,
    MetricPoint,
    ReportRecord,
    ServiceSnapshot,
    TaskSnapshot,
    TaskWithContainers,
)
from ecs_monitor.store.store import (
    format_timestamp,
    get_daily_aggregates,
    get_latest_services,
    get_points_in_range,
    get_recent_reports,
    get_recent_tasks,
    get_task_with_containers,
    open_store,
)

logger = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0
REPORTS_MOUNT_NAME = "reports"

# (series id, label) served by the stored-metrics endpoint
STORED_SERIES: tuple[tuple[str, str], ...] = (
    ("cpuUtilization", "CPU Utilization"),
    ("memoryUtilization", "Memory Utilization"),
    ("cpuReservation", "CPU Reservation"),
    ("memoryReservation", "Memory Reservation"),
)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class StoredSeries(BaseModel):
    """One stored metric series."""

    id: str
    label: str
    data: list[MetricPoint]


class StoredMetricsResponse(BaseModel):
    """Response body for GET /api/clusters/{cluster}/metrics?source=db."""

    cluster_name: str
    source: Literal["database"] = "database"
    metrics: list[StoredSeries]


class DailyAveragesResponse(BaseModel):
    """Response body for GET /api/clusters/{cluster}/daily-averages."""

    cluster_name: str
    metric: str
    days: int
    data: list[DailyAggregate]


class ComponentHealth(BaseModel):
    """Health status of a single dependency."""

    name: str
    status: str
    detail: str | None = None


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    components: list[ComponentHealth]


# ---------------------------------------------------------------------------
# Application lifespan and dependencies
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build AWS clients once at startup and run the scheduler until shutdown."""
    settings = get_settings()
    APP_INFO.info({"version": "0.1.0", "region": settings.aws_region})

    app.state.ecs_client = make_ecs_client(settings)
    app.state.cloudwatch_client = make_cloudwatch_client(settings)
    _mount_reports(app, settings.reports_dir)

    if settings.scheduler_enabled:
        start_scheduler(app.state.ecs_client, app.state.cloudwatch_client)
    yield
    stop_scheduler()
    logger.info("Shutting down ECS monitor API")


def _mount_reports(app: FastAPI, reports_dir: str) -> None:
    """(Re)mount the static report tree; a restarted app replaces the old mount."""
    app.router.routes[:] = [r for r in app.router.routes if getattr(r, "name", None) != REPORTS_MOUNT_NAME]
    app.mount("/reports", StaticFiles(directory=reports_dir, check_dir=False), name=REPORTS_MOUNT_NAME)


def get_store() -> Iterator[sqlite3.Connection]:
    """Per-request store connection, closed once the response is sent."""
    settings = get_settings()
    with open_store(settings.db_path, settings.db_busy_timeout_seconds) as conn:
        yield conn


def get_ecs_client(request: Request) -> AWSClient:
    return request.app.state.ecs_client


def get_cloudwatch_client(request: Request) -> AWSClient:
    return request.app.state.cloudwatch_client


app = FastAPI(title="ECS Cluster Monitor", lifespan=lifespan)


@app.middleware("http")
async def record_request_metrics(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    start = time.monotonic()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", "unmatched")
    status = "success" if response.status_code < 400 else "error"
    REQUESTS_TOTAL.labels(endpoint=endpoint, status=status).inc()
    REQUEST_DURATION.labels(endpoint=endpoint).observe(time.monotonic() - start)
    return response


@app.exception_handler(ExternalAPIError)
async def external_api_error_handler(request: Request, exc: ExternalAPIError) -> JSONResponse:
    logger.warning("Upstream call failed for %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Store failure for %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", response_model=HealthResponse)
async def health(ecs_client: AWSClient = Depends(get_ecs_client)) -> HealthResponse:
    """Check the store and ECS reachability."""
    settings = get_settings()
    components: list[ComponentHealth] = []

    # --- Store ---
    try:
        with open_store(settings.db_path, settings.db_busy_timeout_seconds) as conn:
            conn.execute("SELECT 1").fetchone()
        components.append(ComponentHealth(name="store", status="healthy"))
    except (PersistenceError, sqlite3.Error) as exc:
        components.append(ComponentHealth(name="store", status="unhealthy", detail=str(exc)))

    # --- ECS ---
    try:
        await call_aws(ecs_client, "ecs", "list_clusters", timeout=HEALTH_CHECK_TIMEOUT_SECONDS, maxResults=1)
        components.append(ComponentHealth(name="ecs", status="healthy"))
    except ExternalAPIError as exc:
        components.append(ComponentHealth(name="ecs", status="unhealthy", detail=str(exc)))

    for comp in components:
        COMPONENT_HEALTHY.labels(component=comp.name).set(1.0 if comp.status == "healthy" else 0.0)

    healthy_count = sum(1 for c in components if c.status == "healthy")
    if healthy_count == len(components):
        overall = "healthy"
    elif healthy_count == 0:
        overall = "unhealthy"
    else:
        overall = "degraded"
    return HealthResponse(status=overall, components=components)


# ---------------------------------------------------------------------------
# Cluster endpoints
# ---------------------------------------------------------------------------


@app.get("/api/clusters")
async def list_clusters(ecs_client: AWSClient = Depends(get_ecs_client)) -> list[ClusterView]:
    """Live cluster inventory; nothing is persisted."""
    return await collect_inventory(ecs_client, persist=False, timeout=get_settings().aws_call_timeout_seconds)


@app.get("/api/clusters/{cluster_name}/metrics", response_model=None)
async def cluster_metrics(
    cluster_name: str,
    source: Literal["db", "cloudwatch"] = "cloudwatch",
    start: datetime | None = Query(default=None, alias="startTime"),
    end: datetime | None = Query(default=None, alias="endTime"),
    period: int = Query(default=DEFAULT_PERIOD_SECONDS, gt=0),
    conn: sqlite3.Connection = Depends(get_store),
    cloudwatch_client: AWSClient = Depends(get_cloudwatch_client),
) -> StoredMetricsResponse | MetricsResult:
    """Metrics from the store (``source=db``) or live from CloudWatch."""
    if source == "db":
        if start is None or end is None:
            raise HTTPException(status_code=400, detail="startTime and endTime are required for database queries")
        start_text, end_text = format_timestamp(start), format_timestamp(end)
        return StoredMetricsResponse(
            cluster_name=cluster_name,
            metrics=[
                StoredSeries(
                    id=series_id,
                    label=label,
                    data=get_points_in_range(conn, cluster_name, series_id, start_text, end_text),
                )
                for series_id, label in STORED_SERIES
            ],
        )

    return await collect_metrics(
        cloudwatch_client,
        None,
        cluster_name,
        period_seconds=period,
        start=start,
        end=end,
        persist=False,
        timeout=get_settings().aws_call_timeout_seconds,
    )


@app.get("/api/clusters/{cluster_name}/daily-averages", response_model=DailyAveragesResponse)
async def cluster_daily_averages(
    cluster_name: str,
    metric: str = "cpuUtilization",
    days: int = Query(default=7, ge=1, le=366),
    conn: sqlite3.Connection = Depends(get_store),
) -> DailyAveragesResponse:
    return DailyAveragesResponse(
        cluster_name=cluster_name,
        metric=metric,
        days=days,
        data=get_daily_aggregates(conn, cluster_name, metric, days),
    )


@app.get("/api/clusters/{cluster_name}/services")
async def cluster_services(cluster_name: str, conn: sqlite3.Connection = Depends(get_store)) -> list[ServiceSnapshot]:
    return get_latest_services(conn, cluster_name)


@app.get("/api/clusters/{cluster_name}/tasks")
async def cluster_tasks(
    cluster_name: str,
    limit: int = Query(default=20, ge=1, le=1000),
    conn: sqlite3.Connection = Depends(get_store),
) -> list[TaskSnapshot]:
    return get_recent_tasks(conn, cluster_name, limit)


@app.get("/api/tasks/{task_id}")
async def task_detail(task_id: int, conn: sqlite3.Connection = Depends(get_store)) -> TaskWithContainers:
    """One stored task snapshot with its containers."""
    task = get_task_with_containers(conn, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@app.get("/api/reports")
async def recent_reports(
    limit: int = Query(default=10, ge=1, le=1000),
    conn: sqlite3.Connection = Depends(get_store),
) -> list[ReportRecord]:
    return get_recent_reports(conn, limit)
