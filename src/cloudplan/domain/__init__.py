"""Domain models for provisioning plans and runs."""

from cloudplan.domain.models import (
    DeleteAction,
    ExecutionState,
    ExecutionStatus,
    ProvisioningPlan,
    ResourceSpec,
    RollbackReport,
    Run,
    RunOutcome,
)

__all__ = [
    "DeleteAction",
    "ExecutionState",
    "ExecutionStatus",
    "ProvisioningPlan",
    "ResourceSpec",
    "RollbackReport",
    "Run",
    "RunOutcome",
]
