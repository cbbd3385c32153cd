"""
CLI command for planning (dry-run) a provisioning run.

Validates the plan file and prints the execution order. No provider calls.
"""

import json
from typing import List, Optional

from cloudplan.cli.ux import console, header, print_table, success, warning
from cloudplan.core.errors import main_with_error_handling
from cloudplan.domain.models import ProvisioningPlan
from cloudplan.specs import load_plan, parse_param_overrides


def plan_to_dict(plan: ProvisioningPlan) -> dict:
    return {
        "name": plan.name,
        "order": list(plan.order),
        "resources": [
            {
                "id": spec.id,
                "kind": spec.kind,
                "depends_on": sorted(spec.depends_on),
                "lookup": dict(spec.lookup_filter),
                "delete": str(spec.delete_action),
                "readiness_timeout": spec.readiness_timeout,
            }
            for spec in plan
        ],
    }


def print_plan_summary(plan: ProvisioningPlan) -> None:
    header(f"Plan: {plan.name}")

    if not len(plan):
        warning("Plan contains no resources")
        return

    rows = [
        [
            str(position + 1),
            spec.id,
            spec.kind,
            ", ".join(sorted(spec.depends_on)) or "-",
            str(spec.delete_action),
        ]
        for position, spec in enumerate(plan)
    ]
    print_table("Execution order", ["#", "Resource", "Kind", "Depends on", "On rollback"], rows)
    console.print()
    success(f"{len(plan)} resources, dependency order is valid")
    console.print("[muted]To provision, run:[/muted]")
    console.print("  [info]cloudplan provision <plan file>[/info]")


@main_with_error_handling()
def plan_command(
    plan_file: str,
    params: Optional[List[str]] = None,
    output_format: str = "text",
) -> int:
    """
    Validate a plan file and show the order resources would be provisioned in.

    Returns:
        Exit code (0 for a valid plan, 1 for an invalid one)
    """
    plan = load_plan(plan_file, parse_param_overrides(params))

    if output_format == "json":
        print(json.dumps(plan_to_dict(plan), indent=2))
    else:
        print_plan_summary(plan)

    return 0
