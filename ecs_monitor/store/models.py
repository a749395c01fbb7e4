"""TypedDict models for time-series store records.

Timestamps are UTC text in ``YYYY-MM-DD HH:MM:SS`` form.
"""

from typing_extensions import TypedDict


class MetricPoint(TypedDict):
    id: int
    cluster_name: str
    metric_name: str  # series id, e.g. "cpuUtilization"
    timestamp: str
    value: float
    created_at: str


class DailyAggregate(TypedDict):
    day: str  # YYYY-MM-DD
    average_value: float
    min_value: float
    max_value: float
    sample_count: int


class ServiceSnapshot(TypedDict):
    id: int
    cluster_name: str
    service_name: str
    service_arn: str
    running_count: int
    desired_count: int
    status: str
    timestamp: str


class TaskSnapshot(TypedDict):
    id: int
    cluster_name: str
    task_arn: str
    last_status: str
    desired_status: str
    created_at: str | None
    started_at: str | None
    timestamp: str


class ContainerSnapshot(TypedDict):
    id: int
    task_id: int
    container_arn: str
    name: str
    last_status: str
    exit_code: int | None
    reason: str | None
    timestamp: str


class TaskWithContainers(TaskSnapshot):
    containers: list[ContainerSnapshot]


class ReportRecord(TypedDict):
    id: int
    report_date: str  # YYYY-MM-DD
    cluster_name: str
    report_path: str
    json_payload: str  # JSON-serialized ReportData
    created_at: str
