"""Prometheus metric definitions for monitor self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

COLLECTION_DURATION_BUCKETS = (1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)
EXTERNAL_CALL_DURATION_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)
REPORT_DURATION_BUCKETS = (5.0, 10.0, 15.0, 30.0, 60.0, 120.0, 180.0)
REQUEST_DURATION_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)

# ---------------------------------------------------------------------------
# Collection metrics
# ---------------------------------------------------------------------------

COLLECTION_CYCLES_TOTAL = Counter(
    "ecs_monitor_collection_cycles_total",
    "Total number of collection cycles",
    labelnames=["status"],
)

COLLECTION_DURATION = Histogram(
    "ecs_monitor_collection_duration_seconds",
    "Time taken by one collection cycle in seconds",
    buckets=COLLECTION_DURATION_BUCKETS,
)

METRIC_POINTS_WRITTEN = Counter(
    "ecs_monitor_metric_points_written_total",
    "Metric points appended to the store",
    labelnames=["metric"],
)

SNAPSHOTS_WRITTEN = Counter(
    "ecs_monitor_snapshots_written_total",
    "Snapshot rows appended to the store",
    labelnames=["kind"],
)

# ---------------------------------------------------------------------------
# External API metrics
# ---------------------------------------------------------------------------

EXTERNAL_CALLS_TOTAL = Counter(
    "ecs_monitor_external_calls_total",
    "Total number of AWS API calls",
    labelnames=["service", "operation", "status"],
)

EXTERNAL_CALL_DURATION = Histogram(
    "ecs_monitor_external_call_duration_seconds",
    "Duration of individual AWS API calls in seconds",
    labelnames=["service", "operation"],
    buckets=EXTERNAL_CALL_DURATION_BUCKETS,
)

# ---------------------------------------------------------------------------
# Report metrics
# ---------------------------------------------------------------------------

REPORTS_TOTAL = Counter(
    "ecs_monitor_reports_total",
    "Total number of compiled cluster reports",
    labelnames=["trigger", "status"],
)

REPORT_DURATION = Histogram(
    "ecs_monitor_report_duration_seconds",
    "Time taken to compile one cluster report in seconds",
    buckets=REPORT_DURATION_BUCKETS,
)

# ---------------------------------------------------------------------------
# Query API metrics
# ---------------------------------------------------------------------------

REQUEST_DURATION = Histogram(
    "ecs_monitor_request_duration_seconds",
    "Query API request duration in seconds",
    labelnames=["endpoint"],
    buckets=REQUEST_DURATION_BUCKETS,
)

REQUESTS_TOTAL = Counter(
    "ecs_monitor_requests_total",
    "Total number of query API requests",
    labelnames=["endpoint", "status"],
)

# ---------------------------------------------------------------------------
# Health / info metrics
# ---------------------------------------------------------------------------

COMPONENT_HEALTHY = Gauge(
    "ecs_monitor_component_healthy",
    "Whether a dependency component is healthy (1=healthy, 0=unhealthy)",
    labelnames=["component"],
)

APP_INFO = Info(
    "ecs_monitor",
    "ECS monitor build information",
)
