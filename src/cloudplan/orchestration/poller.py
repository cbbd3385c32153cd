"""Readiness polling for created or adopted resources."""

from __future__ import annotations

import asyncio
import time
from enum import StrEnum
from typing import Awaitable, Callable

import structlog

from cloudplan.core.errors import ProviderError, TransientProviderError
from cloudplan.orchestration.cancellation import CancellationToken
from cloudplan.providers.base import Provider, ResourceStatus

logger = structlog.get_logger()


class ReadinessResult(StrEnum):
    ready = "ready"
    failed = "failed"
    timed_out = "timed_out"
    cancelled = "cancelled"


class ReadinessPoller:
    """Polls ``Provider.describe`` at a fixed interval.

    The first describe happens immediately. Transient describe errors count as
    "still provisioning"; any other provider error fails the resource. The
    cancellation token is checked once per tick.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._provider = provider
        self._interval = interval
        self._clock = clock
        self._sleep = sleep

    async def await_ready(
        self,
        external_id: str,
        kind: str,
        timeout: float,
        *,
        cancel: CancellationToken | None = None,
    ) -> ReadinessResult:
        log = logger.bind(external_id=external_id, kind=kind)
        deadline = self._clock() + timeout
        polls = 0

        while True:
            if cancel is not None and cancel.cancelled:
                log.info("readiness_poll_cancelled", polls=polls, reason=cancel.reason)
                return ReadinessResult.cancelled

            polls += 1
            try:
                status = await self._provider.describe(kind, external_id)
            except TransientProviderError as exc:
                log.warning("readiness_describe_retrying", polls=polls, error=str(exc))
                status = ResourceStatus.provisioning
            except ProviderError as exc:
                log.error("readiness_describe_failed", polls=polls, error=str(exc))
                return ReadinessResult.failed

            if status == ResourceStatus.ready:
                log.info("resource_ready", polls=polls)
                return ReadinessResult.ready
            if status == ResourceStatus.error:
                log.error("resource_entered_error_state", polls=polls)
                return ReadinessResult.failed

            remaining = deadline - self._clock()
            if remaining <= 0:
                log.error("readiness_timed_out", polls=polls, timeout=timeout)
                return ReadinessResult.timed_out
            await self._sleep(min(self._interval, remaining))
