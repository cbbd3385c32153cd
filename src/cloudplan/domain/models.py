"""
Domain models for provisioning runs.

ResourceSpec and ProvisioningPlan are immutable descriptions of what to build.
ExecutionState and Run record what happened during one invocation; only the
orchestrator mutates them, through the transition methods below.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from cloudplan.core.errors import (
    ConfigurationError,
    RollbackError,
    StateTransitionError,
    ValidationError,
)


class DeleteAction(StrEnum):
    """How a resource is compensated during rollback."""

    delete = "delete"
    retain = "retain"


class ExecutionStatus(StrEnum):
    """Lifecycle of one resource within a run."""

    pending = "pending"
    creating = "creating"
    ready = "ready"
    failed = "failed"
    rolled_back = "rolled_back"
    leaked = "leaked"


class RunOutcome(StrEnum):
    succeeded = "succeeded"
    failed = "failed"
    failed_with_leaks = "failed_with_leaks"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResourceSpec:
    """Declarative description of one resource to provision."""

    id: str
    kind: str
    lookup_filter: Mapping[str, Any]
    create_params: Mapping[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = frozenset()
    delete_action: DeleteAction = DeleteAction.delete
    readiness_timeout: float | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationError("Resource id is required")
        if not self.kind:
            raise ValidationError("Resource kind is required", {"resource": self.id})
        if not self.lookup_filter:
            raise ValidationError(
                "Resource lookup filter is required for idempotent re-runs",
                {"resource": self.id},
            )
        if self.readiness_timeout is not None and self.readiness_timeout <= 0:
            raise ValidationError(
                "Readiness timeout must be positive",
                {"resource": self.id, "readiness_timeout": self.readiness_timeout},
            )
        object.__setattr__(self, "lookup_filter", MappingProxyType(dict(self.lookup_filter)))
        object.__setattr__(self, "create_params", MappingProxyType(dict(self.create_params)))
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))
        object.__setattr__(self, "delete_action", DeleteAction(self.delete_action))


@dataclass(frozen=True)
class ProvisioningPlan:
    """ResourceSpecs in an order consistent with their dependencies.

    Build plans with ``PlanBuilder``; the constructor only re-checks that the
    given order is topological.
    """

    resources: tuple[ResourceSpec, ...]
    name: str = "plan"
    _index: Mapping[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "resources", tuple(self.resources))
        index: dict[str, int] = {}
        for position, spec in enumerate(self.resources):
            if spec.id in index:
                raise ConfigurationError("Duplicate resource id", {"resource": spec.id})
            for dep in spec.depends_on:
                if dep not in index:
                    raise ConfigurationError(
                        "Resource is ordered before one of its dependencies",
                        {"resource": spec.id, "dependency": dep},
                    )
            index[spec.id] = position
        object.__setattr__(self, "_index", MappingProxyType(index))

    def __iter__(self) -> Iterator[ResourceSpec]:
        return iter(self.resources)

    def __len__(self) -> int:
        return len(self.resources)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._index

    @property
    def order(self) -> tuple[str, ...]:
        return tuple(spec.id for spec in self.resources)

    @property
    def reverse_order(self) -> tuple[str, ...]:
        """Ids with every dependent ahead of its dependencies."""
        return tuple(reversed(self.order))

    def get(self, resource_id: str) -> ResourceSpec:
        try:
            return self.resources[self._index[resource_id]]
        except KeyError:
            raise KeyError(f"Resource '{resource_id}' is not part of plan '{self.name}'") from None

    def position(self, resource_id: str) -> int:
        return self._index[resource_id]

    def dependencies_of(self, resource_id: str) -> frozenset[str]:
        return self.get(resource_id).depends_on

    def dependents_of(self, resource_id: str) -> tuple[str, ...]:
        return tuple(spec.id for spec in self.resources if resource_id in spec.depends_on)


_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.pending: frozenset({ExecutionStatus.creating, ExecutionStatus.failed}),
    ExecutionStatus.creating: frozenset(
        {
            ExecutionStatus.ready,
            ExecutionStatus.failed,
            ExecutionStatus.rolled_back,
            ExecutionStatus.leaked,
        }
    ),
    ExecutionStatus.ready: frozenset({ExecutionStatus.rolled_back, ExecutionStatus.leaked}),
    ExecutionStatus.failed: frozenset({ExecutionStatus.rolled_back, ExecutionStatus.leaked}),
    ExecutionStatus.rolled_back: frozenset(),
    ExecutionStatus.leaked: frozenset(),
}


@dataclass
class ExecutionState:
    """Per-resource record of one run."""

    resource_id: str
    status: ExecutionStatus = ExecutionStatus.pending
    external_id: str | None = None
    attempts: int = 0
    started_at: datetime | None = None
    ready_at: datetime | None = None
    adopted: bool = False
    error: str | None = None
    error_type: str | None = None

    def _move(self, target: ExecutionStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise StateTransitionError(
                "Invalid state transition",
                {"resource": self.resource_id, "from": str(self.status), "to": str(target)},
            )
        self.status = target

    def mark_started(self, at: datetime | None = None) -> None:
        if self.status is not ExecutionStatus.pending:
            raise StateTransitionError(
                "Only pending resources can start",
                {"resource": self.resource_id, "status": str(self.status)},
            )
        self.started_at = at or utcnow()

    def mark_creating(self, external_id: str, *, adopted: bool = False, attempts: int | None = None) -> None:
        self._move(ExecutionStatus.creating)
        self.external_id = external_id
        self.adopted = adopted
        if attempts is not None:
            self.attempts = attempts

    def mark_ready(self, at: datetime | None = None) -> None:
        self._move(ExecutionStatus.ready)
        self.ready_at = at or utcnow()

    def mark_failed(
        self,
        error: BaseException | str,
        *,
        attempts: int | None = None,
        error_type: str | None = None,
    ) -> None:
        self._move(ExecutionStatus.failed)
        self._record_error(error, error_type)
        if attempts is not None:
            self.attempts = attempts

    def mark_rolled_back(self) -> None:
        self._move(ExecutionStatus.rolled_back)

    def mark_leaked(self, error: BaseException | str) -> None:
        self._move(ExecutionStatus.leaked)
        self._record_error(error)

    def _record_error(self, error: BaseException | str, error_type: str | None = None) -> None:
        if isinstance(error, BaseException):
            self.error = getattr(error, "message", None) or str(error)
            self.error_type = error_type or type(error).__name__
        else:
            self.error = error
            self.error_type = error_type

    @property
    def needs_compensation(self) -> bool:
        """Whether the resource exists (or may exist) in the provider account.

        Creating and Ready resources qualify, and so does a resource that failed
        after it obtained an external id: it was Creating when it failed.
        """
        if self.status in (ExecutionStatus.creating, ExecutionStatus.ready):
            return True
        return self.status is ExecutionStatus.failed and self.external_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.resource_id,
            "status": str(self.status),
            "external_id": self.external_id,
            "attempts": self.attempts,
            "adopted": self.adopted,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ready_at": self.ready_at.isoformat() if self.ready_at else None,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class RollbackReport:
    """Outcome of one best-effort rollback pass."""

    processed: list[str] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)
    leaked: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    errors: dict[str, RollbackError] = field(default_factory=dict)

    @property
    def has_leaks(self) -> bool:
        return bool(self.leaked)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": list(self.processed),
            "rolled_back": list(self.rolled_back),
            "leaked": list(self.leaked),
            "retained": list(self.retained),
            "errors": {rid: error.message for rid, error in self.errors.items()},
        }


@dataclass
class Run:
    """Aggregate state of one provisioning invocation."""

    plan: ProvisioningPlan
    run_id: str
    states: dict[str, ExecutionState]
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    outcome: RunOutcome | None = None
    failure_reason: str | None = None
    failed_resource: str | None = None
    rollback: RollbackReport | None = None

    @classmethod
    def start(cls, plan: ProvisioningPlan, run_id: str | None = None) -> "Run":
        return cls(
            plan=plan,
            run_id=run_id or uuid.uuid4().hex[:12],
            states={spec.id: ExecutionState(resource_id=spec.id) for spec in plan},
        )

    def state(self, resource_id: str) -> ExecutionState:
        return self.states[resource_id]

    def ids_with_status(self, *statuses: ExecutionStatus) -> list[str]:
        """Ids in plan order whose state has one of the given statuses."""
        return [rid for rid in self.plan.order if self.states[rid].status in statuses]

    def dependencies_ready(self, resource_id: str) -> bool:
        return all(
            self.states[dep].status is ExecutionStatus.ready
            for dep in self.plan.dependencies_of(resource_id)
        )

    @property
    def all_ready(self) -> bool:
        return all(state.status is ExecutionStatus.ready for state in self.states.values())

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    def finish(self, outcome: RunOutcome, at: datetime | None = None) -> None:
        self.outcome = outcome
        self.finished_at = at or utcnow()

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()

