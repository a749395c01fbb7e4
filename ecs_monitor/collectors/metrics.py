"""CloudWatch metric collector for ECS clusters.

One batched GetMetricData request per cluster covers all tracked series.
Every non-null datapoint is appended to the store as-is: re-collecting an
overlapping window stores the overlap again.
"""

import logging
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Any

from typing_extensions import TypedDict

from ecs_monitor.collectors.aws import DEFAULT_TIMEOUT_SECONDS, AWSClient, call_aws
from ecs_monitor.collectors.fanout import gather_or_cancel
from ecs_monitor.observability.metrics import METRIC_POINTS_WRITTEN
from ecs_monitor.store.store import format_timestamp, save_metric

logger = logging.getLogger(__name__)

NAMESPACE = "AWS/ECS"
STATISTIC = "Average"
DEFAULT_PERIOD_SECONDS = 300
DEFAULT_LOOKBACK = timedelta(hours=3)

# (series id stored as metric_name, CloudWatch metric name)
TRACKED_METRICS: tuple[tuple[str, str], ...] = (
    ("cpuUtilization", "CPUUtilization"),
    ("memoryUtilization", "MemoryUtilization"),
    ("cpuReservation", "CPUReservation"),
    ("memoryReservation", "MemoryReservation"),
    ("containerInstanceCount", "ContainerInstanceCount"),
)


class MetricSeries(TypedDict):
    id: str
    label: str
    timestamps: list[str]
    values: list[float]


class MetricsResult(TypedDict):
    cluster_name: str
    period: int
    start_time: str
    end_time: str
    metrics: list[MetricSeries]


def build_metric_queries(cluster_name: str, period_seconds: int) -> list[dict[str, Any]]:
    """Build the MetricDataQueries payload for every tracked series of one cluster."""
    return [
        {
            "Id": series_id,
            "MetricStat": {
                "Metric": {
                    "Namespace": NAMESPACE,
                    "MetricName": metric_name,
                    "Dimensions": [{"Name": "ClusterName", "Value": cluster_name}],
                },
                "Period": period_seconds,
                "Stat": STATISTIC,
            },
            "ReturnData": True,
        }
        for series_id, metric_name in TRACKED_METRICS
    ]


def _merge_pages(pages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Concatenate per-Id timestamp/value arrays across NextToken pages."""
    merged: dict[str, dict[str, Any]] = {}
    for page in pages:
        for result in page.get("MetricDataResults") or []:
            series_id = str(result.get("Id", ""))
            entry = merged.setdefault(
                series_id,
                {"Id": series_id, "Label": result.get("Label", series_id), "Timestamps": [], "Values": []},
            )
            entry["Timestamps"].extend(result.get("Timestamps") or [])
            entry["Values"].extend(result.get("Values") or [])
    return list(merged.values())


async def collect_metrics(
    cloudwatch_client: AWSClient,
    conn: sqlite3.Connection | None,
    cluster_name: str,
    *,
    period_seconds: int = DEFAULT_PERIOD_SECONDS,
    start: datetime | None = None,
    end: datetime | None = None,
    persist: bool = True,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> MetricsResult:
    """Fetch all tracked series for one cluster over ``[start, end]``.

    Args:
        cloudwatch_client: boto3 CloudWatch client.
        conn: Store connection; required when ``persist`` is true.
        cluster_name: ECS cluster name (the ClusterName dimension).
        period_seconds: Aggregation granularity of returned datapoints.
        start: Window start. Defaults to three hours before ``end``.
        end: Window end. Defaults to now.
        persist: Append every non-null datapoint as a MetricPoint.
        timeout: Per-call deadline in seconds.

    Returns:
        Parallel, ascending timestamp/value arrays per series.
    """
    if persist and conn is None:
        msg = "collect_metrics(persist=True) requires a store connection"
        raise ValueError(msg)

    end = end or datetime.now(UTC)
    start = start or end - DEFAULT_LOOKBACK
    queries = build_metric_queries(cluster_name, period_seconds)

    pages: list[dict[str, Any]] = []
    token: str | None = None
    while True:
        params: dict[str, Any] = {
            "MetricDataQueries": queries,
            "StartTime": start,
            "EndTime": end,
            "ScanBy": "TimestampAscending",
        }
        if token:
            params["NextToken"] = token
        page = await call_aws(cloudwatch_client, "cloudwatch", "get_metric_data", timeout=timeout, **params)
        pages.append(page)
        token = page.get("NextToken")
        if not token:
            break

    series: list[MetricSeries] = []
    written = 0
    for result in _merge_pages(pages):
        series_id = result["Id"]
        timestamps: list[str] = []
        values: list[float] = []
        for ts, value in zip(result["Timestamps"], result["Values"], strict=False):
            if ts is None or value is None:
                continue
            formatted = format_timestamp(ts)
            timestamps.append(formatted)
            values.append(float(value))
            if persist and conn is not None:
                save_metric(
                    conn,
                    cluster_name=cluster_name,
                    metric_name=series_id,
                    timestamp=formatted,
                    value=float(value),
                )
                METRIC_POINTS_WRITTEN.labels(metric=series_id).inc()
                written += 1
        series.append(MetricSeries(id=series_id, label=str(result["Label"]), timestamps=timestamps, values=values))

    if persist:
        logger.debug("Stored %d metric points for %s", written, cluster_name)

    return MetricsResult(
        cluster_name=cluster_name,
        period=period_seconds,
        start_time=format_timestamp(start),
        end_time=format_timestamp(end),
        metrics=series,
    )


async def collect_metrics_for_clusters(
    cloudwatch_client: AWSClient,
    conn: sqlite3.Connection | None,
    cluster_names: list[str],
    *,
    concurrency: int = 4,
    **kwargs: Any,
) -> list[MetricsResult]:
    """Run ``collect_metrics`` for several clusters through a bounded worker pool.

    The first cluster to fail cancels the rest and its error propagates.
    """

    async def _one(name: str) -> MetricsResult:
        return await collect_metrics(cloudwatch_client, conn, name, **kwargs)

    return await gather_or_cancel(cluster_names, _one, limit=concurrency)
