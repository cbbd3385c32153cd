"""Best-effort compensation of partially provisioned runs."""

from __future__ import annotations

import structlog

from cloudplan.core.errors import RollbackError
from cloudplan.domain.models import DeleteAction, RollbackReport, Run
from cloudplan.orchestration.executor import provider_retrying
from cloudplan.providers.base import Provider

logger = structlog.get_logger()


class RollbackManager:
    """Deletes the resources of a failed run, dependents before dependencies.

    A failed delete is recorded and the pass continues; the resource is
    reported as leaked. Resources marked ``retain`` and, unless
    ``rollback_adopted`` is set, resources adopted from an earlier run are left
    in place and reported as retained.

    The manager never mutates the run; the orchestrator applies the report.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        rollback_adopted: bool = False,
        max_attempts: int = 3,
        backoff_factor: float = 0.5,
        max_wait: float = 30.0,
    ) -> None:
        self._provider = provider
        self._rollback_adopted = rollback_adopted
        self._max_attempts = max_attempts
        self._backoff_factor = backoff_factor
        self._max_wait = max_wait

    def eligible(self, run: Run) -> list[str]:
        """Ids needing compensation, in reverse dependency order."""
        return [rid for rid in run.plan.reverse_order if run.state(rid).needs_compensation]

    async def rollback(self, run: Run) -> RollbackReport:
        report = RollbackReport()
        log = logger.bind(run_id=run.run_id)
        targets = self.eligible(run)
        log.info("rollback_started", resources=targets)

        for resource_id in targets:
            spec = run.plan.get(resource_id)
            state = run.state(resource_id)
            report.processed.append(resource_id)

            if spec.delete_action is DeleteAction.retain:
                log.info("rollback_retained", resource_id=resource_id, reason="delete_action")
                report.retained.append(resource_id)
                continue
            if state.adopted and not self._rollback_adopted:
                log.info("rollback_retained", resource_id=resource_id, reason="adopted")
                report.retained.append(resource_id)
                continue

            try:
                await self._delete(spec.kind, state.external_id, resource_id)
            except Exception as exc:
                error = RollbackError(
                    f"Failed to delete {resource_id}: {exc}",
                    {"external_id": state.external_id, "cause": str(exc)},
                )
                log.error(
                    "rollback_delete_failed",
                    resource_id=resource_id,
                    external_id=state.external_id,
                    error=str(exc),
                )
                report.leaked.append(resource_id)
                report.errors[resource_id] = error
                continue

            log.info("rollback_deleted", resource_id=resource_id, external_id=state.external_id)
            report.rolled_back.append(resource_id)

        log.info(
            "rollback_finished",
            rolled_back=len(report.rolled_back),
            leaked=len(report.leaked),
            retained=len(report.retained),
        )
        return report

    async def _delete(self, kind: str, external_id: str | None, resource_id: str) -> None:
        if external_id is None:
            raise RollbackError("No external id recorded", {"resource": resource_id})
        retrying = provider_retrying(
            max_attempts=self._max_attempts,
            backoff_factor=self._backoff_factor,
            max_wait=self._max_wait,
            log=logger.bind(resource_id=resource_id, operation="delete"),
        )
        async for attempt in retrying:
            with attempt:
                await self._provider.delete(kind, external_id)
