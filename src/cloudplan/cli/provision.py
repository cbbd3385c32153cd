"""
CLI command for provisioning a plan.

Runs pre-flight checks, builds the plan, drives the orchestrator and reports
the outcome. SIGINT and SIGTERM cancel the run, which is then rolled back.
"""

from __future__ import annotations

import asyncio
import json
import signal
from typing import Any, List, Optional

from cloudplan.cli.ux import console, error, header, print_key_value, print_table, styled_status, success, warning
from cloudplan.config.settings import Settings, get_settings
from cloudplan.core.errors import ProvisioningFailed, main_with_error_handling
from cloudplan.domain.models import Run, RunOutcome
from cloudplan.orchestration import CancellationToken, Orchestrator, build_report, exit_code_for, write_report
from cloudplan.providers import create_provider
from cloudplan.providers.base import Provider
from cloudplan.specs import load_plan, parse_param_overrides
from cloudplan.validation import ensure_preflight, run_preflight

_HALT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


async def provision(
    run: Run,
    provider: Provider,
    settings: Settings,
    cancel: CancellationToken,
) -> Run:
    """Run the orchestrator with SIGINT/SIGTERM wired to ``cancel``."""
    loop = asyncio.get_running_loop()
    installed = []
    for signum in _HALT_SIGNALS:
        try:
            loop.add_signal_handler(signum, cancel.cancel, f"received {signum.name}")
        except (NotImplementedError, RuntimeError):
            # Event loops without signal support (Windows, non-main threads).
            continue
        installed.append(signum)

    try:
        return await Orchestrator.from_settings(provider, settings).execute(run, cancel=cancel)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def print_run_summary(run: Run, report: dict[str, Any]) -> None:
    header(f"Run {run.run_id}: {run.plan.name}")

    rows = []
    for entry in report["resources"]:
        rows.append(
            [
                entry["id"],
                entry["kind"],
                styled_status(entry["status"]),
                entry["external_id"] or "-",
                "yes" if entry["adopted"] else "no",
                str(entry["attempts"]),
                entry["error"] or "",
            ]
        )
    print_table(
        "Resources",
        ["Resource", "Kind", "Status", "External id", "Adopted", "Attempts", "Error"],
        rows,
    )

    print_key_value(
        {
            "outcome": str(run.outcome) if run.outcome else "unfinished",
            "duration": f"{run.duration_seconds:.1f}s",
            "failure": run.failure_reason or "-",
        },
        title="Summary",
    )
    console.print()

    if run.outcome is RunOutcome.succeeded:
        success(f"All {len(run.plan)} resources ready")
        return
    if report["rolled_back"]:
        warning("Rolled back: " + ", ".join(report["rolled_back"]))
    if report["retained"]:
        warning("Retained: " + ", ".join(report["retained"]))
    if report["leaked"]:
        error("Leaked, manual cleanup required: " + ", ".join(report["leaked"]))


def _emit_report(run: Run, report_path: Optional[str], output_format: str) -> dict[str, Any]:
    report = build_report(run)
    if report_path:
        write_report(run, report_path)
    if output_format == "json":
        print(json.dumps(report, indent=2))
    else:
        print_run_summary(run, report)
    return report


@main_with_error_handling()
def provision_command(
    plan_file: str,
    params: Optional[List[str]] = None,
    provider_name: Optional[str] = None,
    max_workers: Optional[int] = None,
    deadline: Optional[float] = None,
    poll_interval: Optional[float] = None,
    report_path: Optional[str] = None,
    skip_preflight: bool = False,
    output_format: str = "text",
    settings: Optional[Settings] = None,
) -> int:
    """
    Provision every resource of a plan file, rolling back on failure.

    Returns:
        Exit code: 0 success, 1 invalid input, 2 rolled back, 3 leaked,
        130 interrupted
    """
    settings = settings or get_settings()
    overrides = {
        "max_workers": max_workers,
        "run_deadline": deadline,
        "poll_interval": poll_interval,
        "provider": provider_name,
    }
    settings = settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})

    plan = load_plan(plan_file, parse_param_overrides(params))
    provider = create_provider(settings.provider)
    if not skip_preflight:
        # The in-memory provider needs no network.
        report = run_preflight(settings, connectivity=settings.provider != "memory")
        ensure_preflight(report)

    cancel = CancellationToken()
    run = Run.start(plan)
    try:
        asyncio.run(provision(run, provider, settings, cancel))
    except Exception:
        # The partial run is reported before the error propagates.
        _emit_report(run, report_path, output_format)
        raise
    report = _emit_report(run, report_path, output_format)

    if run.outcome is not RunOutcome.succeeded:
        details = {"run_id": run.run_id}
        if run.failed_resource:
            details["failed_resource"] = run.failed_resource
        if report["leaked"]:
            details["leaked"] = ", ".join(report["leaked"])
        raise ProvisioningFailed(
            run.failure_reason or "Provisioning failed",
            details,
            leaked=run.outcome is RunOutcome.failed_with_leaks,
            interrupted=cancel.cancelled,
        )
    return exit_code_for(run)
