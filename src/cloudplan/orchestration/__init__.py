"""Plan ordering, resource execution, readiness polling and rollback."""

from cloudplan.orchestration.cancellation import CancellationToken
from cloudplan.orchestration.engine import Orchestrator, WorkerMessage
from cloudplan.orchestration.executor import StepExecutor, provider_retrying
from cloudplan.orchestration.plan_builder import PlanBuilder
from cloudplan.orchestration.poller import ReadinessPoller, ReadinessResult
from cloudplan.orchestration.results import build_report, exit_code_for, write_report
from cloudplan.orchestration.rollback import RollbackManager

__all__ = [
    "CancellationToken",
    "Orchestrator",
    "PlanBuilder",
    "ReadinessPoller",
    "ReadinessResult",
    "RollbackManager",
    "StepExecutor",
    "WorkerMessage",
    "build_report",
    "exit_code_for",
    "provider_retrying",
    "write_report",
]
