"""Pre-flight validation run before provisioning."""

from cloudplan.validation.preflight import (
    CheckResult,
    PreflightReport,
    check_commands,
    check_connectivity,
    check_disk_space,
    check_memory,
    check_privileges,
    ensure_preflight,
    run_preflight,
)

__all__ = [
    "CheckResult",
    "PreflightReport",
    "check_commands",
    "check_connectivity",
    "check_disk_space",
    "check_memory",
    "check_privileges",
    "ensure_preflight",
    "run_preflight",
]
