"""ECS inventory collector: clusters, services, tasks and their containers.

Clusters are fetched concurrently; one cluster failing cancels the others and
fails the whole call.  Snapshot rows are only appended once every fetch of the
call has succeeded, and all rows of one call share a single tick timestamp.
"""

import logging
import sqlite3
from datetime import UTC, datetime
from typing import Any

from typing_extensions import TypedDict

from ecs_monitor.collectors.aws import DEFAULT_TIMEOUT_SECONDS, AWSClient, call_aws, chunked, paginate
from ecs_monitor.collectors.fanout import gather_or_cancel
from ecs_monitor.observability.metrics import SNAPSHOTS_WRITTEN
from ecs_monitor.store.store import (
    format_timestamp,
    save_container_snapshot,
    save_service_snapshot,
    save_task_snapshot,
)

logger = logging.getLogger(__name__)

# API limits on how many identifiers one describe call accepts
DESCRIBE_CLUSTERS_BATCH = 100
DESCRIBE_SERVICES_BATCH = 10
DESCRIBE_TASKS_BATCH = 100


# ---------------------------------------------------------------------------
# Views returned to callers
# ---------------------------------------------------------------------------


class ServiceView(TypedDict):
    service_arn: str | None
    service_name: str | None
    running_count: int
    desired_count: int
    status: str | None
    created_at: str | None


class ClusterView(TypedDict):
    cluster_name: str
    cluster_arn: str | None
    status: str | None
    registered_container_instances_count: int
    running_tasks_count: int
    pending_tasks_count: int
    active_services_count: int
    services: list[ServiceView]


class ContainerView(TypedDict):
    container_arn: str | None
    name: str | None
    last_status: str | None
    exit_code: int | None
    reason: str | None


class TaskView(TypedDict):
    task_arn: str | None
    task_definition_arn: str | None
    last_status: str | None
    desired_status: str | None
    created_at: str | None
    started_at: str | None
    containers: list[ContainerView]


def _optional_timestamp(value: object) -> str | None:
    return format_timestamp(value) if isinstance(value, datetime) else None


def _service_view(service: dict[str, Any]) -> ServiceView:
    return ServiceView(
        service_arn=service.get("serviceArn"),
        service_name=service.get("serviceName"),
        running_count=int(service.get("runningCount") or 0),
        desired_count=int(service.get("desiredCount") or 0),
        status=service.get("status"),
        created_at=_optional_timestamp(service.get("createdAt")),
    )


def _cluster_view(cluster: dict[str, Any], services: list[ServiceView]) -> ClusterView:
    return ClusterView(
        cluster_name=str(cluster.get("clusterName", "")),
        cluster_arn=cluster.get("clusterArn"),
        status=cluster.get("status"),
        registered_container_instances_count=int(cluster.get("registeredContainerInstancesCount") or 0),
        running_tasks_count=int(cluster.get("runningTasksCount") or 0),
        pending_tasks_count=int(cluster.get("pendingTasksCount") or 0),
        active_services_count=int(cluster.get("activeServicesCount") or 0),
        services=services,
    )


def _task_view(task: dict[str, Any]) -> TaskView:
    containers: list[ContainerView] = []
    for container in task.get("containers") or []:
        exit_code = container.get("exitCode")
        containers.append(
            ContainerView(
                container_arn=container.get("containerArn"),
                name=container.get("name"),
                last_status=container.get("lastStatus"),
                exit_code=int(exit_code) if exit_code is not None else None,
                reason=container.get("reason"),
            )
        )
    return TaskView(
        task_arn=task.get("taskArn"),
        task_definition_arn=task.get("taskDefinitionArn"),
        last_status=task.get("lastStatus"),
        desired_status=task.get("desiredStatus"),
        created_at=_optional_timestamp(task.get("createdAt")),
        started_at=_optional_timestamp(task.get("startedAt")),
        containers=containers,
    )


# ---------------------------------------------------------------------------
# Clusters and services
# ---------------------------------------------------------------------------


async def _describe_clusters(ecs_client: AWSClient, cluster_arns: list[str], timeout: float) -> list[dict[str, Any]]:
    clusters: list[dict[str, Any]] = []
    for batch in chunked(cluster_arns, DESCRIBE_CLUSTERS_BATCH):
        resp = await call_aws(ecs_client, "ecs", "describe_clusters", timeout=timeout, clusters=list(batch))
        clusters.extend(resp.get("clusters") or [])
    return clusters


async def _fetch_services(ecs_client: AWSClient, cluster_name: str, timeout: float) -> list[dict[str, Any]]:
    """List and describe every service of one cluster."""
    service_arns: list[str] = await paginate(
        ecs_client, "ecs", "list_services", "serviceArns", timeout=timeout, cluster=cluster_name
    )
    services: list[dict[str, Any]] = []
    for batch in chunked(service_arns, DESCRIBE_SERVICES_BATCH):
        resp = await call_aws(
            ecs_client, "ecs", "describe_services", timeout=timeout, cluster=cluster_name, services=list(batch)
        )
        services.extend(resp.get("services") or [])
    return services


def _persist_services(
    conn: sqlite3.Connection,
    cluster_name: str,
    services: list[dict[str, Any]],
    timestamp: str,
) -> int:
    written = 0
    for service in services:
        name = service.get("serviceName")
        arn = service.get("serviceArn")
        if not name or not arn:
            continue
        save_service_snapshot(
            conn,
            cluster_name=cluster_name,
            service_name=name,
            service_arn=arn,
            running_count=int(service.get("runningCount") or 0),
            desired_count=int(service.get("desiredCount") or 0),
            status=service.get("status") or "UNKNOWN",
            timestamp=timestamp,
        )
        written += 1
    return written


async def collect_inventory(
    ecs_client: AWSClient,
    conn: sqlite3.Connection | None = None,
    *,
    persist: bool = True,
    now: datetime | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> list[ClusterView]:
    """Enumerate clusters and their services, optionally appending snapshots.

    Args:
        ecs_client: boto3 ECS client (or any object with the same methods).
        conn: Store connection; required when ``persist`` is true.
        persist: Append one ServiceSnapshot per service, sharing one timestamp.
        now: Tick timestamp for persisted rows. Defaults to the current time.
        timeout: Per-call deadline in seconds.

    Returns:
        One ClusterView per cluster; empty when the account has no clusters.

    Raises:
        ExternalAPIError: If listing clusters or any cluster's services fails.
    """
    if persist and conn is None:
        msg = "collect_inventory(persist=True) requires a store connection"
        raise ValueError(msg)

    tick = format_timestamp(now or datetime.now(UTC))

    cluster_arns: list[str] = await paginate(ecs_client, "ecs", "list_clusters", "clusterArns", timeout=timeout)
    if not cluster_arns:
        logger.info("No ECS clusters found")
        return []

    clusters = await _describe_clusters(ecs_client, cluster_arns, timeout)

    async def _services_for(cluster: dict[str, Any]) -> list[dict[str, Any]]:
        return await _fetch_services(ecs_client, str(cluster.get("clusterName", "")), timeout)

    services_by_cluster = await gather_or_cancel(clusters, _services_for)

    if persist and conn is not None:
        written = 0
        for cluster, services in zip(clusters, services_by_cluster, strict=True):
            written += _persist_services(conn, str(cluster.get("clusterName", "")), services, tick)
        SNAPSHOTS_WRITTEN.labels(kind="service").inc(written)
        logger.info("Stored %d service snapshots across %d clusters", written, len(clusters))

    return [
        _cluster_view(cluster, [_service_view(s) for s in services])
        for cluster, services in zip(clusters, services_by_cluster, strict=True)
    ]


# ---------------------------------------------------------------------------
# Tasks and containers
# ---------------------------------------------------------------------------


def _persist_task(conn: sqlite3.Connection, cluster_name: str, task: dict[str, Any], view: TaskView, tick: str) -> int:
    """Insert the task row, then its containers, each as its own write."""
    task_id = save_task_snapshot(
        conn,
        cluster_name=cluster_name,
        task_arn=str(task["taskArn"]),
        last_status=task.get("lastStatus") or "UNKNOWN",
        desired_status=task.get("desiredStatus") or "UNKNOWN",
        created_at=view["created_at"],
        started_at=view["started_at"],
        timestamp=tick,
    )
    containers = 0
    for container in view["containers"]:
        if not container["container_arn"] or not container["name"]:
            continue
        save_container_snapshot(
            conn,
            task_id=task_id,
            container_arn=container["container_arn"],
            name=container["name"],
            last_status=container["last_status"] or "UNKNOWN",
            exit_code=container["exit_code"],
            reason=container["reason"],
            timestamp=tick,
        )
        containers += 1
    return containers


async def collect_tasks(
    ecs_client: AWSClient,
    conn: sqlite3.Connection | None,
    cluster_name: str,
    *,
    persist: bool = True,
    now: datetime | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> list[TaskView]:
    """List and describe the tasks of one cluster, optionally appending snapshots.

    A task row and its container rows are separate writes; a crash in between
    leaves the task with a subset of its containers.

    Returns:
        Task views sorted by ``created_at``, newest first.
    """
    if persist and conn is None:
        msg = "collect_tasks(persist=True) requires a store connection"
        raise ValueError(msg)

    tick = format_timestamp(now or datetime.now(UTC))
    task_arns: list[str] = await paginate(
        ecs_client, "ecs", "list_tasks", "taskArns", timeout=timeout, cluster=cluster_name
    )
    if not task_arns:
        return []

    tasks: list[dict[str, Any]] = []
    for batch in chunked(task_arns, DESCRIBE_TASKS_BATCH):
        resp = await call_aws(
            ecs_client, "ecs", "describe_tasks", timeout=timeout, cluster=cluster_name, tasks=list(batch)
        )
        tasks.extend(resp.get("tasks") or [])

    views = [_task_view(t) for t in tasks]

    if persist and conn is not None:
        task_rows = 0
        container_rows = 0
        for task, view in zip(tasks, views, strict=True):
            if not task.get("taskArn"):
                continue
            container_rows += _persist_task(conn, cluster_name, task, view, tick)
            task_rows += 1
        SNAPSHOTS_WRITTEN.labels(kind="task").inc(task_rows)
        SNAPSHOTS_WRITTEN.labels(kind="container").inc(container_rows)
        logger.debug("Stored %d tasks / %d containers for %s", task_rows, container_rows, cluster_name)

    views.sort(key=lambda v: v["created_at"] or "", reverse=True)
    return views
