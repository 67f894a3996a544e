"""Submit-then-poll state machine shared by the job based providers."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .errors import ProviderJobFailure, ProviderTimeout

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed-out"


@dataclass
class AsyncTaskHandle:
    """Tracks one provider job while its adapter call is in flight."""

    task_id: str
    poll_url: str | None = None
    status: TaskStatus = TaskStatus.SUBMITTED


async def poll_task(
    handle: AsyncTaskHandle,
    *,
    provider: str,
    fetch: Callable[[AsyncTaskHandle], Awaitable[Any]],
    read_status: Callable[[Any], TaskStatus],
    failure_reason: Callable[[Any], str],
    has_artifacts: Callable[[Any], bool] | None = None,
    max_attempts: int,
    interval: float,
) -> Any:
    """Poll *handle* until it settles and return the last status payload.

    Raises :class:`ProviderJobFailure` on an explicit failure status and
    :class:`ProviderTimeout` once ``max_attempts`` polls are spent.
    """

    for attempt in range(1, max_attempts + 1):
        await asyncio.sleep(interval)
        payload = await fetch(handle)
        handle.status = read_status(payload)
        logger.debug(
            "poll provider=%s task=%s attempt=%s/%s status=%s",
            provider,
            handle.task_id,
            attempt,
            max_attempts,
            handle.status.value,
        )

        if handle.status is TaskStatus.FAILED:
            raise ProviderJobFailure(provider, failure_reason(payload))
        if handle.status is TaskStatus.SUCCEEDED:
            return payload
        if has_artifacts is not None and has_artifacts(payload):
            return payload

    handle.status = TaskStatus.TIMED_OUT
    raise ProviderTimeout(
        provider,
        f"task {handle.task_id} did not finish after {max_attempts} status checks",
    )
