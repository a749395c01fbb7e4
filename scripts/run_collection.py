"""Run one collection tick (inventory, tasks, metrics) and exit.

Usage:
    python -m scripts.run_collection
"""

import asyncio
import logging
import sys

from ecs_monitor.collectors.aws import make_cloudwatch_client, make_ecs_client
from ecs_monitor.config import get_settings
from ecs_monitor.errors import MonitorError
from ecs_monitor.scheduler import run_collection_cycle
from ecs_monitor.store.store import open_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def main() -> None:
    """Collect once into the configured store."""
    settings = get_settings()
    try:
        with open_store(settings.db_path, settings.db_busy_timeout_seconds) as conn:
            count = await run_collection_cycle(
                make_ecs_client(settings), make_cloudwatch_client(settings), conn, settings
            )
    except MonitorError as e:
        print(f"Collection failed: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Collected {count} clusters")


if __name__ == "__main__":
    asyncio.run(main())
