"""
Orchestrator: drives a provisioning plan to completion or rolls it back.

Workers perform provider calls concurrently and report progress as
``WorkerMessage`` objects on a queue. Only the orchestrator applies those
messages to the ``Run``, so there is a single writer for all run state.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

import structlog

from cloudplan.config.settings import Settings
from cloudplan.core.errors import ProviderError, ReadinessTimeoutError
from cloudplan.domain.models import (
    ExecutionState,
    ExecutionStatus,
    ProvisioningPlan,
    ResourceSpec,
    Run,
    RunOutcome,
)
from cloudplan.logging import StepEvents, bind_context
from cloudplan.orchestration.cancellation import CancellationToken
from cloudplan.orchestration.executor import StepExecutor
from cloudplan.orchestration.poller import ReadinessPoller, ReadinessResult
from cloudplan.orchestration.rollback import RollbackManager
from cloudplan.providers.base import Provider

logger = structlog.get_logger()


@dataclass(frozen=True)
class WorkerMessage:
    """Progress report from a worker. ``final`` marks the worker's last message."""

    resource_id: str
    step: ExecutionState | None = None
    readiness: ReadinessResult | None = None
    timeout: float | None = None
    crash: Exception | None = None
    final: bool = False


class Orchestrator:
    """Provisions a plan with a bounded pool of workers.

    A resource starts once every dependency is Ready. The first failure, an
    exceeded run deadline or a cancelled caller token halts the run: no new
    resources start, in-flight workers are drained, and everything that may
    exist is rolled back in reverse plan order. Rollback runs on every path
    that does not end in success, including unexpected exceptions.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        executor: StepExecutor | None = None,
        poller: ReadinessPoller | None = None,
        rollback: RollbackManager | None = None,
        max_workers: int = 4,
        poll_interval: float = 5.0,
        readiness_timeout: float = 900.0,
        run_deadline: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if readiness_timeout <= 0:
            raise ValueError("readiness_timeout must be positive")
        self._provider = provider
        self._executor = executor or StepExecutor(provider)
        self._poller = poller or ReadinessPoller(provider, interval=poll_interval, clock=clock)
        self._rollback = rollback or RollbackManager(provider)
        self._max_workers = max_workers
        self._poll_interval = poll_interval
        self._readiness_timeout = readiness_timeout
        self._run_deadline = run_deadline
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        provider: Provider,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "Orchestrator":
        retry = {
            "max_attempts": settings.max_attempts,
            "backoff_factor": settings.retry_backoff_factor,
            "max_wait": settings.retry_max_wait,
        }
        return cls(
            provider,
            executor=StepExecutor(provider, **retry),
            poller=ReadinessPoller(
                provider, interval=settings.poll_interval, clock=clock, sleep=sleep
            ),
            rollback=RollbackManager(
                provider, rollback_adopted=settings.rollback_adopted, **retry
            ),
            max_workers=settings.max_workers,
            poll_interval=settings.poll_interval,
            readiness_timeout=settings.readiness_timeout,
            run_deadline=settings.run_deadline,
            clock=clock,
        )

    async def run(
        self,
        plan: ProvisioningPlan,
        *,
        cancel: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> Run:
        """Provision ``plan`` and return the finished run."""
        return await self.execute(Run.start(plan, run_id=run_id), cancel=cancel)

    async def execute(self, run: Run, *, cancel: CancellationToken | None = None) -> Run:
        """Drive a freshly started ``run`` to completion or rollback.

        The caller's ``cancel`` token is observed but never cancelled by the
        orchestrator; a child token is used to halt workers. The run is updated
        in place, so a caller holding it can report on it even if this raises.
        """
        plan = run.plan
        events = StepEvents(bind_context(run_id=run.run_id, plan=plan.name))
        halt = (cancel or CancellationToken()).child()
        events.step_start(
            "run_started",
            resources=len(plan),
            order=list(plan.order),
            max_workers=self._max_workers,
        )

        succeeded = False
        try:
            succeeded = await self._drive(run, halt, events)
        except BaseException as exc:
            if run.failure_reason is None:
                run.failure_reason = f"unexpected error: {exc!r}"
            raise
        finally:
            if succeeded:
                run.finish(RunOutcome.succeeded)
                events.info("run_succeeded", duration=run.duration_seconds)
            else:
                await self._compensate(run, halt, events)
        return run

    async def _drive(self, run: Run, halt: CancellationToken, events: StepEvents) -> bool:
        outbox: asyncio.Queue[WorkerMessage] = asyncio.Queue()
        workers: Dict[str, asyncio.Task[None]] = {}
        started = self._clock()
        message: WorkerMessage | None = None

        try:
            while True:
                self._check_halt(run, halt, started, events)
                if not halt.cancelled:
                    self._launch_ready(run, halt, outbox, workers, started, events)
                if not workers:
                    break

                try:
                    message = await asyncio.wait_for(outbox.get(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    continue

                self._apply(run, message, events)
                applied = message
                message = None
                if applied.final:
                    workers.pop(applied.resource_id, None)
                if run.state(applied.resource_id).status is ExecutionStatus.failed:
                    self._halt(
                        run,
                        halt,
                        f"resource '{applied.resource_id}' failed",
                        events,
                        failed_resource=applied.resource_id,
                    )
        finally:
            for task in workers.values():
                task.cancel()
            if workers:
                await asyncio.gather(*workers.values(), return_exceptions=True)
            unapplied = [message] if message is not None else []
            while not outbox.empty():
                unapplied.append(outbox.get_nowait())
            self._record_unapplied(run, unapplied, events)

        if halt.cancelled:
            return False
        if not run.all_ready:
            # Reachable only if a resource can never be scheduled.
            self._halt(run, halt, "resources left unscheduled", events)
            return False
        return True

    def _record_unapplied(
        self, run: Run, messages: list[WorkerMessage], events: StepEvents
    ) -> None:
        # Non-empty only when the loop exits abnormally. A created resource
        # must leave Pending so that rollback sees it.
        for message in messages:
            step = message.step
            if step is None or step.status is not ExecutionStatus.creating:
                continue
            state = run.state(message.resource_id)
            if state.status is not ExecutionStatus.pending:
                continue
            state.mark_creating(step.external_id, adopted=step.adopted, attempts=step.attempts)
            events.warn(
                "resource_recorded_late",
                resource_id=message.resource_id,
                external_id=step.external_id,
            )

    def _check_halt(
        self, run: Run, halt: CancellationToken, started: float, events: StepEvents
    ) -> None:
        if halt.cancelled:
            self._halt(run, halt, halt.reason or "cancelled", events)
        elif self._run_deadline is not None and self._clock() - started >= self._run_deadline:
            self._halt(run, halt, "run deadline exceeded", events)

    def _halt(
        self,
        run: Run,
        halt: CancellationToken,
        reason: str,
        events: StepEvents,
        failed_resource: str | None = None,
    ) -> None:
        if run.failure_reason is not None:
            return
        run.failure_reason = reason
        run.failed_resource = failed_resource
        halt.cancel(reason)
        events.error(
            "run_halted",
            reason=reason,
            failed_resource=failed_resource,
            in_flight=run.ids_with_status(ExecutionStatus.creating),
        )

    def _launch_ready(
        self,
        run: Run,
        halt: CancellationToken,
        outbox: asyncio.Queue[WorkerMessage],
        workers: Dict[str, asyncio.Task[None]],
        started: float,
        events: StepEvents,
    ) -> None:
        for spec in run.plan:
            if len(workers) >= self._max_workers:
                return
            state = run.state(spec.id)
            if state.status is not ExecutionStatus.pending or spec.id in workers:
                continue
            if not run.dependencies_ready(spec.id):
                continue

            timeout = self._timeout_for(spec, started)
            state.mark_started()
            events.step_start("resource_started", resource_id=spec.id, kind=spec.kind, timeout=timeout)
            workers[spec.id] = asyncio.create_task(
                self._work(spec, timeout, halt, outbox), name=f"provision:{spec.id}"
            )

    def _timeout_for(self, spec: ResourceSpec, started: float) -> float:
        timeout = spec.readiness_timeout or self._readiness_timeout
        if self._run_deadline is not None:
            remaining = self._run_deadline - (self._clock() - started)
            timeout = min(timeout, max(remaining, 0.0))
        return timeout

    async def _work(
        self,
        spec: ResourceSpec,
        timeout: float,
        halt: CancellationToken,
        outbox: asyncio.Queue[WorkerMessage],
    ) -> None:
        try:
            step = await self._executor.execute(spec, cancel=halt)
            if step.status is not ExecutionStatus.creating:
                outbox.put_nowait(WorkerMessage(spec.id, step=step, final=True))
                return
            outbox.put_nowait(WorkerMessage(spec.id, step=step))

            result = await self._poller.await_ready(
                step.external_id, spec.kind, timeout, cancel=halt
            )
            outbox.put_nowait(
                WorkerMessage(spec.id, readiness=result, timeout=timeout, final=True)
            )
        except Exception as exc:
            logger.exception("resource_worker_crashed", resource_id=spec.id)
            outbox.put_nowait(WorkerMessage(spec.id, crash=exc, final=True))

    def _apply(self, run: Run, message: WorkerMessage, events: StepEvents) -> None:
        state = run.state(message.resource_id)
        log = events.bind(resource_id=message.resource_id)

        if message.step is not None:
            step = message.step
            if step.status is ExecutionStatus.creating:
                state.mark_creating(step.external_id, adopted=step.adopted, attempts=step.attempts)
                log.info(
                    "resource_creating",
                    external_id=step.external_id,
                    adopted=step.adopted,
                    attempts=step.attempts,
                )
            elif step.status is ExecutionStatus.pending:
                log.info("resource_create_skipped", attempts=step.attempts)
            else:
                state.mark_failed(
                    step.error or "create failed",
                    attempts=step.attempts,
                    error_type=step.error_type,
                )
                log.error("resource_failed", error=state.error, attempts=state.attempts)

        if message.readiness is not None:
            self._apply_readiness(state, message, log)

        if message.crash is not None:
            state.mark_failed(message.crash)
            log.error("resource_failed", error=state.error, error_type=state.error_type)

    def _apply_readiness(self, state: ExecutionState, message: WorkerMessage, log: StepEvents) -> None:
        result = message.readiness
        if result is ReadinessResult.ready:
            state.mark_ready()
            log.info("resource_ready", external_id=state.external_id)
        elif result is ReadinessResult.cancelled:
            # Left Creating; rollback still compensates it.
            log.warn("resource_readiness_abandoned", external_id=state.external_id)
        elif result is ReadinessResult.timed_out:
            state.mark_failed(
                ReadinessTimeoutError(
                    f"{state.resource_id} not ready after {message.timeout:g}s",
                    {"external_id": state.external_id, "timeout": message.timeout},
                )
            )
            log.error("resource_failed", error=state.error, error_type=state.error_type)
        else:
            state.mark_failed(
                ProviderError(
                    f"{state.resource_id} entered an error state",
                    {"external_id": state.external_id},
                )
            )
            log.error("resource_failed", error=state.error, error_type=state.error_type)

    async def _compensate(self, run: Run, halt: CancellationToken, events: StepEvents) -> None:
        if run.failure_reason is None:
            run.failure_reason = halt.reason or "run aborted"
        halt.cancel(run.failure_reason)

        events.step_start(
            "rollback_started",
            reason=run.failure_reason,
            failed_resource=run.failed_resource,
        )
        report = await self._rollback.rollback(run)
        for resource_id in report.rolled_back:
            run.state(resource_id).mark_rolled_back()
        for resource_id in report.leaked:
            run.state(resource_id).mark_leaked(report.errors[resource_id])
        run.rollback = report

        if report.has_leaks:
            run.finish(RunOutcome.failed_with_leaks)
            events.error(
                "run_failed_with_leaks",
                reason=run.failure_reason,
                leaked=report.leaked,
                duration=run.duration_seconds,
            )
        else:
            run.finish(RunOutcome.failed)
            events.warn(
                "run_failed",
                reason=run.failure_reason,
                rolled_back=report.rolled_back,
                retained=report.retained,
                duration=run.duration_seconds,
            )
