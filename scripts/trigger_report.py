"""Compile daily reports on demand.

Usage:
    python -m scripts.trigger_report                 # window ending now
    python -m scripts.trigger_report yesterday       # window ending 24h ago
    python -m scripts.trigger_report 2024-05-01      # window ending 2024-05-01 00:00 UTC
    python -m scripts.trigger_report --cluster prod  # one cluster only
"""

import argparse
import asyncio
import logging
import sys
from datetime import UTC, datetime, timedelta

from ecs_monitor.collectors.aws import make_ecs_client
from ecs_monitor.config import get_settings
from ecs_monitor.errors import MonitorError
from ecs_monitor.report.renderer import playwright_renderer_factory
from ecs_monitor.scheduler import run_report_cycle
from ecs_monitor.store.store import open_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def parse_report_date(value: str | None, now: datetime | None = None) -> datetime | None:
    """Turn ``yesterday`` or ``YYYY-MM-DD`` into the end of the report window."""
    if value is None:
        return None
    if value == "yesterday":
        return (now or datetime.now(UTC)) - timedelta(days=1)
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=UTC)
    except ValueError as exc:
        msg = f"invalid report date {value!r}: expected 'yesterday' or YYYY-MM-DD"
        raise argparse.ArgumentTypeError(msg) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Compile ECS cluster reports")
    parser.add_argument("date", nargs="?", help="'yesterday' or YYYY-MM-DD (default: now)")
    parser.add_argument("--cluster", action="append", dest="clusters", help="Only this cluster (repeatable)")
    return parser


async def main(argv: list[str] | None = None) -> int:
    """Compile reports and return the process exit code."""
    args = build_parser().parse_args(argv)
    try:
        report_date = parse_report_date(args.date)
    except argparse.ArgumentTypeError as e:
        print(str(e), file=sys.stderr)
        return 2

    settings = get_settings()
    try:
        with open_store(settings.db_path, settings.db_busy_timeout_seconds) as conn:
            results = await run_report_cycle(
                make_ecs_client(settings),
                conn,
                settings,
                playwright_renderer_factory(settings.render_timeout_seconds),
                report_date=report_date,
                cluster_names=args.clusters,
                trigger="manual",
            )
    except MonitorError as e:
        print(f"Report trigger failed: {e}", file=sys.stderr)
        return 1

    for name, path in results.items():
        print(f"{name}: {path if path is not None else 'FAILED'}")
    return 1 if any(path is None for path in results.values()) else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
