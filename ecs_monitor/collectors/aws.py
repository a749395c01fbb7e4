"""boto3 client factories and the bounded-time AWS call helper.

boto3 is synchronous, so every call runs in a worker thread under
``asyncio.wait_for``.  botocore's own retries are disabled: a failed call
fails its unit of work and the next scheduled firing tries again.
"""

import asyncio
import logging
import time
from collections.abc import Iterator, Sequence
from typing import Any, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ecs_monitor.config import Settings
from ecs_monitor.errors import ExternalAPIError
from ecs_monitor.observability.metrics import EXTERNAL_CALL_DURATION, EXTERNAL_CALLS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

# boto3 clients are generated at runtime; there is no useful static type.
AWSClient = Any

T = TypeVar("T")


def _client_config(settings: Settings) -> Config:
    return Config(
        region_name=settings.aws_region,
        connect_timeout=settings.aws_connect_timeout_seconds,
        read_timeout=settings.aws_call_timeout_seconds,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )


def make_ecs_client(settings: Settings) -> AWSClient:
    """Build an ECS client for the configured region."""
    return boto3.client("ecs", config=_client_config(settings))


def make_cloudwatch_client(settings: Settings) -> AWSClient:
    """Build a CloudWatch client for the configured region."""
    return boto3.client("cloudwatch", config=_client_config(settings))


async def call_aws(
    client: AWSClient,
    service: str,
    operation: str,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    **params: Any,
) -> dict[str, Any]:
    """Invoke ``client.<operation>(**params)`` off the event loop with a deadline.

    Raises:
        ExternalAPIError: On any botocore error or when ``timeout`` elapses.
            Cancellation of the awaiting task is propagated unchanged.
    """
    method = getattr(client, operation)
    start = time.monotonic()
    try:
        response: dict[str, Any] = await asyncio.wait_for(asyncio.to_thread(method, **params), timeout=timeout)
    except TimeoutError as exc:
        EXTERNAL_CALLS_TOTAL.labels(service=service, operation=operation, status="timeout").inc()
        raise ExternalAPIError(service, operation, f"timed out after {timeout:g}s") from exc
    except (BotoCoreError, ClientError) as exc:
        EXTERNAL_CALLS_TOTAL.labels(service=service, operation=operation, status="error").inc()
        raise ExternalAPIError(service, operation, str(exc)) from exc
    finally:
        EXTERNAL_CALL_DURATION.labels(service=service, operation=operation).observe(time.monotonic() - start)

    EXTERNAL_CALLS_TOTAL.labels(service=service, operation=operation, status="success").inc()
    return response


async def paginate(
    client: AWSClient,
    service: str,
    operation: str,
    result_key: str,
    *,
    token_key: str = "nextToken",
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    **params: Any,
) -> list[Any]:
    """Follow ``token_key`` pages of a list operation, concatenating ``result_key``."""
    items: list[Any] = []
    token: str | None = None
    while True:
        page_params = dict(params)
        if token:
            page_params[token_key] = token
        page = await call_aws(client, service, operation, timeout=timeout, **page_params)
        items.extend(page.get(result_key) or [])
        token = page.get(token_key)
        if not token:
            return items


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Split ``items`` into consecutive slices of at most ``size`` (describe-call limits)."""
    for i in range(0, len(items), size):
        yield items[i : i + size]
