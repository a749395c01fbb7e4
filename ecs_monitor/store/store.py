"""SQLite-based time-series store: connection management, schema init, and CRUD.

The store is an append-only event log. Every ``save_*`` function is a single
INSERT followed by a commit; nothing in this module updates or deletes rows.
Connections run in WAL mode so readers never block the writer, and carry a
busy timeout so overlapping scheduler firings serialize their writes.

All database operations use parameterized queries. ``sqlite3.Error`` is
translated into ``PersistenceError`` at this boundary.
"""

import functools
import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import ParamSpec, TypeVar

from ecs_monitor.errors import PersistenceError
from ecs_monitor.store.models import (
    ContainerSnapshot,
    DailyAggregate,
    MetricPoint,
    ReportRecord,
    ServiceSnapshot,
    TaskSnapshot,
    TaskWithContainers,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS metrics (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    cluster_name TEXT NOT NULL,
    metric_name  TEXT NOT NULL,
    timestamp    TEXT NOT NULL,
    value        REAL,
    created_at   TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_metrics_lookup ON metrics(cluster_name, metric_name, timestamp);

CREATE TABLE IF NOT EXISTS services (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    cluster_name  TEXT NOT NULL,
    service_name  TEXT NOT NULL,
    service_arn   TEXT NOT NULL,
    running_count INTEGER,
    desired_count INTEGER,
    status        TEXT,
    timestamp     TEXT NOT NULL,
    created_at    TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_services_lookup ON services(cluster_name, service_name, timestamp);

CREATE TABLE IF NOT EXISTS tasks (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    cluster_name   TEXT NOT NULL,
    task_arn       TEXT NOT NULL,
    last_status    TEXT,
    desired_status TEXT,
    created_at     TEXT,
    started_at     TEXT,
    timestamp      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_created ON tasks(cluster_name, created_at);

CREATE TABLE IF NOT EXISTS containers (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id       INTEGER NOT NULL REFERENCES tasks(id),
    container_arn TEXT NOT NULL,
    name          TEXT NOT NULL,
    last_status   TEXT,
    exit_code     INTEGER,
    reason        TEXT,
    timestamp     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_containers_task ON containers(task_id);

CREATE TABLE IF NOT EXISTS reports (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    report_date  TEXT NOT NULL,
    cluster_name TEXT NOT NULL,
    report_path  TEXT NOT NULL,
    json_payload TEXT,
    created_at   TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_reports_key ON reports(report_date, cluster_name);
"""

P = ParamSpec("P")
R = TypeVar("R")


def _store_operation(func: Callable[P, R]) -> Callable[P, R]:
    """Translate sqlite3 errors raised by ``func`` into PersistenceError."""

    @functools.wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as exc:
            raise PersistenceError(func.__name__, str(exc)) from exc

    return wrapper


def format_timestamp(value: datetime) -> str:
    """Format a datetime as UTC store text. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------


@_store_operation
def get_connection(db_path: str, busy_timeout: float = 5.0) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrent reads.

    Args:
        db_path: Path to the database file, created (with its parent directory)
                 if missing. Pass ":memory:" for in-memory databases (tests).
        busy_timeout: Seconds to wait on a locked database before failing.

    Returns:
        A new sqlite3.Connection with row_factory set to sqlite3.Row.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=busy_timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@_store_operation
def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if they don't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


def get_initialized_connection(db_path: str, busy_timeout: float = 5.0) -> sqlite3.Connection:
    """Get a connection with schema already initialized. Convenience wrapper."""
    conn = get_connection(db_path, busy_timeout)
    init_schema(conn)
    return conn


@contextmanager
def open_store(db_path: str, busy_timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
    """Yield an initialized connection and close it on every exit path."""
    conn = get_initialized_connection(db_path, busy_timeout)
    try:
        yield conn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


@_store_operation
def save_metric(
    conn: sqlite3.Connection,
    *,
    cluster_name: str,
    metric_name: str,
    timestamp: str,
    value: float,
) -> int:
    """Append one metric point. Returns the new row ID.

    No uniqueness is enforced: collecting an overlapping window twice stores
    the overlapping points twice.
    """
    cursor = conn.execute(
        "INSERT INTO metrics (cluster_name, metric_name, timestamp, value) VALUES (?, ?, ?, ?)",
        (cluster_name, metric_name, timestamp, value),
    )
    conn.commit()
    return cursor.lastrowid or 0


@_store_operation
def get_points_in_range(
    conn: sqlite3.Connection,
    cluster_name: str,
    metric_name: str,
    start: str,
    end: str,
) -> list[MetricPoint]:
    """All points of one series with ``start <= timestamp <= end``, oldest first."""
    rows = conn.execute(
        """SELECT * FROM metrics
           WHERE cluster_name = ? AND metric_name = ? AND timestamp BETWEEN ? AND ?
           ORDER BY timestamp ASC, id ASC""",
        (cluster_name, metric_name, start, end),
    ).fetchall()
    return [_row_to_metric(r) for r in rows]


@_store_operation
def get_latest_points(conn: sqlite3.Connection, cluster_name: str, limit: int = 100) -> list[MetricPoint]:
    """The N most recent points of a cluster across all series, newest first."""
    rows = conn.execute(
        "SELECT * FROM metrics WHERE cluster_name = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
        (cluster_name, limit),
    ).fetchall()
    return [_row_to_metric(r) for r in rows]


@_store_operation
def get_daily_aggregates(
    conn: sqlite3.Connection,
    cluster_name: str,
    metric_name: str,
    days: int = 7,
    now: datetime | None = None,
) -> list[DailyAggregate]:
    """Per-day avg/min/max of one series over the trailing ``days`` calendar days.

    The window is exactly ``days`` UTC calendar days ending with the day of
    ``now`` (inclusive). Days without samples are absent from the result.
    """
    if days <= 0:
        return []
    reference = now or datetime.now(UTC)
    if reference.tzinfo is not None:
        reference = reference.astimezone(UTC)
    last_day = reference.date()
    first_day = last_day - timedelta(days=days - 1)
    window_start = f"{first_day.isoformat()} 00:00:00"
    window_end = f"{(last_day + timedelta(days=1)).isoformat()} 00:00:00"

    rows = conn.execute(
        """SELECT date(timestamp) AS day,
                  AVG(value) AS average_value,
                  MIN(value) AS min_value,
                  MAX(value) AS max_value,
                  COUNT(value) AS sample_count
           FROM metrics
           WHERE cluster_name = ? AND metric_name = ?
             AND timestamp >= ? AND timestamp < ?
             AND value IS NOT NULL
           GROUP BY date(timestamp)
           ORDER BY day ASC""",
        (cluster_name, metric_name, window_start, window_end),
    ).fetchall()
    return [
        DailyAggregate(
            day=r["day"],
            average_value=r["average_value"],
            min_value=r["min_value"],
            max_value=r["max_value"],
            sample_count=r["sample_count"],
        )
        for r in rows
    ]


def _row_to_metric(row: sqlite3.Row) -> MetricPoint:
    return MetricPoint(
        id=row["id"],
        cluster_name=row["cluster_name"],
        metric_name=row["metric_name"],
        timestamp=row["timestamp"],
        value=row["value"],
        created_at=row["created_at"],
    )


# ---------------------------------------------------------------------------
# Service snapshots
# ---------------------------------------------------------------------------


@_store_operation
def save_service_snapshot(
    conn: sqlite3.Connection,
    *,
    cluster_name: str,
    service_name: str,
    service_arn: str,
    running_count: int,
    desired_count: int,
    status: str,
    timestamp: str,
) -> int:
    """Append one service snapshot. Returns the new row ID."""
    cursor = conn.execute(
        """INSERT INTO services
           (cluster_name, service_name, service_arn, running_count, desired_count, status, timestamp)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (cluster_name, service_name, service_arn, running_count, desired_count, status, timestamp),
    )
    conn.commit()
    return cursor.lastrowid or 0


@_store_operation
def get_services_in_range(
    conn: sqlite3.Connection,
    cluster_name: str,
    start: str,
    end: str,
) -> list[ServiceSnapshot]:
    """Every service snapshot observed in ``[start, end]``, newest first."""
    rows = conn.execute(
        """SELECT * FROM services
           WHERE cluster_name = ? AND timestamp BETWEEN ? AND ?
           ORDER BY timestamp DESC, id DESC""",
        (cluster_name, start, end),
    ).fetchall()
    return [_row_to_service(r) for r in rows]


@_store_operation
def get_latest_services(conn: sqlite3.Connection, cluster_name: str) -> list[ServiceSnapshot]:
    """Current state of every service: one max-timestamp row per service name.

    When several rows share the max timestamp the one inserted last wins.
    """
    rows = conn.execute(
        """SELECT * FROM services
           WHERE id IN (
               SELECT MAX(s.id)
               FROM services s
               JOIN (
                   SELECT service_name, MAX(timestamp) AS max_timestamp
                   FROM services
                   WHERE cluster_name = ?
                   GROUP BY service_name
               ) latest
               ON s.service_name = latest.service_name AND s.timestamp = latest.max_timestamp
               WHERE s.cluster_name = ?
               GROUP BY s.service_name
           )
           ORDER BY service_name""",
        (cluster_name, cluster_name),
    ).fetchall()
    return [_row_to_service(r) for r in rows]


def _row_to_service(row: sqlite3.Row) -> ServiceSnapshot:
    return ServiceSnapshot(
        id=row["id"],
        cluster_name=row["cluster_name"],
        service_name=row["service_name"],
        service_arn=row["service_arn"],
        running_count=row["running_count"],
        desired_count=row["desired_count"],
        status=row["status"],
        timestamp=row["timestamp"],
    )


# ---------------------------------------------------------------------------
# Task and container snapshots
# ---------------------------------------------------------------------------


@_store_operation
def save_task_snapshot(
    conn: sqlite3.Connection,
    *,
    cluster_name: str,
    task_arn: str,
    last_status: str,
    desired_status: str,
    created_at: str | None,
    started_at: str | None,
    timestamp: str,
) -> int:
    """Append one task snapshot. Returns the new row ID (owner key for containers)."""
    cursor = conn.execute(
        """INSERT INTO tasks
           (cluster_name, task_arn, last_status, desired_status, created_at, started_at, timestamp)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (cluster_name, task_arn, last_status, desired_status, created_at, started_at, timestamp),
    )
    conn.commit()
    return cursor.lastrowid or 0


@_store_operation
def save_container_snapshot(
    conn: sqlite3.Connection,
    *,
    task_id: int,
    container_arn: str,
    name: str,
    last_status: str,
    exit_code: int | None,
    reason: str | None,
    timestamp: str,
) -> int:
    """Append one container row owned by ``task_id``. Returns the new row ID."""
    cursor = conn.execute(
        """INSERT INTO containers
           (task_id, container_arn, name, last_status, exit_code, reason, timestamp)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (task_id, container_arn, name, last_status, exit_code, reason, timestamp),
    )
    conn.commit()
    return cursor.lastrowid or 0


# Latest snapshot per task ARN within one cluster; ties go to the last insert
_LATEST_TASK_IDS = """
    SELECT MAX(t.id)
    FROM tasks t
    JOIN (
        SELECT task_arn, MAX(timestamp) AS max_timestamp
        FROM tasks
        WHERE cluster_name = ?
        GROUP BY task_arn
    ) latest
    ON t.task_arn = latest.task_arn AND t.timestamp = latest.max_timestamp
    WHERE t.cluster_name = ?
    GROUP BY t.task_arn
"""


@_store_operation
def get_recent_tasks(conn: sqlite3.Connection, cluster_name: str, limit: int = 20) -> list[TaskSnapshot]:
    """The N most recently created tasks of a cluster, each at its latest snapshot."""
    rows = conn.execute(
        f"SELECT * FROM tasks WHERE id IN ({_LATEST_TASK_IDS}) "  # noqa: S608
        "ORDER BY created_at DESC, id DESC LIMIT ?",
        (cluster_name, cluster_name, limit),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


@_store_operation
def get_tasks_in_window(
    conn: sqlite3.Connection,
    cluster_name: str,
    start: str,
    end: str,
) -> list[TaskSnapshot]:
    """Tasks whose ``created_at`` falls in ``[start, end]``, newest first.

    Every tick re-snapshots running tasks, so only the latest row per task ARN
    is returned.
    """
    rows = conn.execute(
        f"""SELECT * FROM tasks
           WHERE id IN ({_LATEST_TASK_IDS}) AND created_at BETWEEN ? AND ?
           ORDER BY created_at DESC, id DESC""",  # noqa: S608
        (cluster_name, cluster_name, start, end),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


@_store_operation
def get_task_with_containers(conn: sqlite3.Connection, task_id: int) -> TaskWithContainers | None:
    """Return the task row merged with its containers, or None if the id is absent."""
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if row is None:
        return None
    container_rows = conn.execute("SELECT * FROM containers WHERE task_id = ? ORDER BY id", (task_id,)).fetchall()
    task = _row_to_task(row)
    return TaskWithContainers(**task, containers=[_row_to_container(c) for c in container_rows])


def _row_to_task(row: sqlite3.Row) -> TaskSnapshot:
    return TaskSnapshot(
        id=row["id"],
        cluster_name=row["cluster_name"],
        task_arn=row["task_arn"],
        last_status=row["last_status"],
        desired_status=row["desired_status"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        timestamp=row["timestamp"],
    )


def _row_to_container(row: sqlite3.Row) -> ContainerSnapshot:
    return ContainerSnapshot(
        id=row["id"],
        task_id=row["task_id"],
        container_arn=row["container_arn"],
        name=row["name"],
        last_status=row["last_status"],
        exit_code=row["exit_code"],
        reason=row["reason"],
        timestamp=row["timestamp"],
    )


# ---------------------------------------------------------------------------
# Report records
# ---------------------------------------------------------------------------


@_store_operation
def save_report_record(
    conn: sqlite3.Connection,
    *,
    report_date: str,
    cluster_name: str,
    report_path: str,
    json_payload: str,
) -> int:
    """Append a report record. Returns the new row ID.

    Records are keyed by (report_date, cluster_name). Compiling the same
    cluster twice on one date appends a second record; readers take the
    newest one.
    """
    cursor = conn.execute(
        "INSERT INTO reports (report_date, cluster_name, report_path, json_payload) VALUES (?, ?, ?, ?)",
        (report_date, cluster_name, report_path, json_payload),
    )
    conn.commit()
    return cursor.lastrowid or 0


@_store_operation
def get_reports_for_date(
    conn: sqlite3.Connection,
    report_date: str,
    cluster_name: str | None = None,
) -> list[ReportRecord]:
    """Report records for one date (optionally one cluster), newest first."""
    if cluster_name:
        rows = conn.execute(
            "SELECT * FROM reports WHERE report_date = ? AND cluster_name = ? ORDER BY id DESC",
            (report_date, cluster_name),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM reports WHERE report_date = ? ORDER BY cluster_name, id DESC",
            (report_date,),
        ).fetchall()
    return [_row_to_report(r) for r in rows]


@_store_operation
def get_recent_reports(conn: sqlite3.Connection, limit: int = 10) -> list[ReportRecord]:
    """Retrieve the N most recent report records."""
    rows = conn.execute("SELECT * FROM reports ORDER BY report_date DESC, id DESC LIMIT ?", (limit,)).fetchall()
    return [_row_to_report(r) for r in rows]


def _row_to_report(row: sqlite3.Row) -> ReportRecord:
    return ReportRecord(
        id=row["id"],
        report_date=row["report_date"],
        cluster_name=row["cluster_name"],
        report_path=row["report_path"],
        json_payload=row["json_payload"],
        created_at=row["created_at"],
    )
