"""Idempotent lookup-or-create of a single resource."""

from __future__ import annotations

from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cloudplan.core.errors import ProviderError, TransientProviderError
from cloudplan.domain.models import ExecutionState, ResourceSpec
from cloudplan.orchestration.cancellation import CancellationToken
from cloudplan.providers.base import Provider

logger = structlog.get_logger()


def provider_retrying(
    *,
    max_attempts: int,
    backoff_factor: float,
    max_wait: float,
    log: Any,
) -> AsyncRetrying:
    """Retry policy for provider calls: transient errors only, exponential backoff."""

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "provider_call_retrying",
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            error=str(exc),
        )

    return AsyncRetrying(
        retry=retry_if_exception_type(TransientProviderError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_factor, max=max_wait),
        before_sleep=_before_sleep,
        reraise=True,
    )


class StepExecutor:
    """Adopts an existing resource matching the lookup filter or creates one.

    Each attempt performs the lookup before the create, so a create that went
    through before a transient failure is found on the next attempt instead
    of being duplicated. Such a resource was created by this execution and is
    never reported as adopted.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        max_attempts: int = 3,
        backoff_factor: float = 0.5,
        max_wait: float = 30.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._provider = provider
        self._max_attempts = max_attempts
        self._backoff_factor = backoff_factor
        self._max_wait = max_wait

    async def execute(
        self, spec: ResourceSpec, cancel: CancellationToken | None = None
    ) -> ExecutionState:
        """Return a Creating state carrying the external id, or a Failed state.

        Once ``cancel`` is set no further create is issued: the attempt in
        progress still looks the resource up, and the state stays Pending if
        nothing is found.
        """
        state = ExecutionState(resource_id=spec.id)
        log = logger.bind(resource_id=spec.id, kind=spec.kind)
        retrying = provider_retrying(
            max_attempts=self._max_attempts,
            backoff_factor=self._backoff_factor,
            max_wait=self._max_wait,
            log=log,
        )
        create_issued = False

        try:
            async for attempt in retrying:
                with attempt:
                    state.attempts = attempt.retry_state.attempt_number
                    external_id = await self._provider.lookup(spec.kind, spec.lookup_filter)
                    adopted = external_id is not None and not create_issued
                    if external_id is None:
                        if cancel is not None and cancel.cancelled:
                            log.info(
                                "resource_create_skipped",
                                attempts=state.attempts,
                                reason=cancel.reason,
                            )
                            return state
                        create_issued = True
                        external_id = await self._provider.create(spec.kind, spec.create_params)
                        log.info("resource_created", external_id=external_id)
                    elif adopted:
                        log.info("resource_adopted", external_id=external_id)
                    else:
                        log.info("resource_create_recovered", external_id=external_id)
        except TransientProviderError as exc:
            log.error("resource_retries_exhausted", attempts=state.attempts, error=str(exc))
            state.mark_failed(exc)
            return state
        except ProviderError as exc:
            log.error("resource_create_failed", attempts=state.attempts, error=str(exc))
            state.mark_failed(exc)
            return state

        state.mark_creating(external_id, adopted=adopted)
        return state
