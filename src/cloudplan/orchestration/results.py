"""Run reports and exit codes."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from cloudplan.core.errors import ExitCode
from cloudplan.domain.models import ExecutionStatus, Run, RunOutcome

logger = structlog.get_logger()

_EXIT_CODES = {
    RunOutcome.succeeded: ExitCode.SUCCESS,
    RunOutcome.failed: ExitCode.ROLLED_BACK,
    RunOutcome.failed_with_leaks: ExitCode.LEAKED,
}


def exit_code_for(run: Run) -> ExitCode:
    if run.outcome is None:
        return ExitCode.UNKNOWN_ERROR
    return _EXIT_CODES[run.outcome]


def build_report(run: Run) -> dict[str, Any]:
    """Summarize a finished run as JSON-serializable data.

    ``leaked`` lists the resources an operator has to clean up by hand,
    ``never_started`` those that were still pending when the run halted.
    """
    resources = []
    for spec in run.plan:
        entry = run.state(spec.id).to_dict()
        entry["kind"] = spec.kind
        entry["delete_action"] = str(spec.delete_action)
        resources.append(entry)

    retained = list(run.rollback.retained) if run.rollback else []
    return {
        "run_id": run.run_id,
        "plan": run.plan.name,
        "outcome": str(run.outcome) if run.outcome else None,
        "exit_code": int(exit_code_for(run)),
        "failure_reason": run.failure_reason,
        "failed_resource": run.failed_resource,
        "started_at": run.started_at.isoformat(),
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "duration_seconds": round(run.duration_seconds, 3),
        "resources": resources,
        "ready": run.ids_with_status(ExecutionStatus.ready),
        "rolled_back": run.ids_with_status(ExecutionStatus.rolled_back),
        "leaked": run.ids_with_status(ExecutionStatus.leaked),
        "retained": retained,
        "failed": [
            rid for rid in run.plan.order if run.state(rid).error is not None
            and run.state(rid).status is not ExecutionStatus.leaked
        ],
        "never_started": [
            rid for rid in run.ids_with_status(ExecutionStatus.pending)
            if run.state(rid).started_at is None
        ],
        "rollback": run.rollback.to_dict() if run.rollback else None,
    }


def write_report(run: Run, path: str | Path) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(build_report(run), indent=2) + "\n")
    logger.info("run_report_written", run_id=run.run_id, path=str(target))
    return target
