"""
Pre-flight checks run before any provider call.

A failed check aborts provisioning with exit code 1 and no side effects.

Usage:
    from cloudplan.validation import ensure_preflight, run_preflight

    report = run_preflight(get_settings())
    ensure_preflight(report)
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import httpx
import structlog

from cloudplan.config.settings import Settings
from cloudplan.core.errors import ValidationError

logger = structlog.get_logger()


@dataclass
class CheckResult:
    """Result of a single pre-flight check."""

    name: str
    passed: bool
    detail: str = ""


@dataclass
class PreflightReport:
    """Results of all pre-flight checks."""

    checks: List[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failures(self) -> List[CheckResult]:
        return [check for check in self.checks if not check.passed]


def check_privileges(require_root: bool, euid: Optional[int] = None) -> CheckResult:
    if not require_root:
        return CheckResult("privileges", True, "root not required")
    if euid is None:
        euid = os.geteuid() if hasattr(os, "geteuid") else -1
    if euid == 0:
        return CheckResult("privileges", True, "running as root")
    return CheckResult("privileges", False, f"root required, running as uid {euid}")


def check_connectivity(url: str, timeout: float = 5.0) -> CheckResult:
    """Check that the provider network is reachable with a HEAD request."""
    try:
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            response = client.head(url)
    except httpx.TimeoutException:
        return CheckResult("connectivity", False, f"timeout after {timeout:g}s reaching {url}")
    except httpx.HTTPError as e:
        return CheckResult("connectivity", False, f"cannot reach {url}: {e}")

    if response.status_code >= 500:
        return CheckResult("connectivity", False, f"{url} returned HTTP {response.status_code}")
    return CheckResult("connectivity", True, f"{url} reachable (HTTP {response.status_code})")


def check_disk_space(min_gb: float, path: str | Path = "/") -> CheckResult:
    free_gb = shutil.disk_usage(path).free / 1024**3
    if free_gb < min_gb:
        return CheckResult("disk_space", False, f"{free_gb:.1f} GB free, {min_gb:g} GB required")
    return CheckResult("disk_space", True, f"{free_gb:.1f} GB free")


def _total_memory_mb() -> Optional[int]:
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES") // (1024 * 1024)
    except (AttributeError, ValueError, OSError):
        return None


def check_memory(
    min_mb: int, total_mb: Callable[[], Optional[int]] = _total_memory_mb
) -> CheckResult:
    available = total_mb()
    if available is None:
        return CheckResult("memory", True, "total memory unknown on this platform")
    if available < min_mb:
        return CheckResult("memory", False, f"{available} MB RAM, {min_mb} MB required")
    return CheckResult("memory", True, f"{available} MB RAM")


def check_commands(commands: Sequence[str]) -> CheckResult:
    missing = [command for command in commands if shutil.which(command) is None]
    if missing:
        return CheckResult("commands", False, "missing: " + ", ".join(missing))
    return CheckResult("commands", True, f"{len(commands)} required commands found")


def run_preflight(settings: Settings, *, connectivity: bool = True) -> PreflightReport:
    """Run every pre-flight check configured in ``settings``."""
    report = PreflightReport()
    report.checks.append(check_privileges(settings.preflight_require_root))
    if connectivity and settings.preflight_connectivity_url:
        report.checks.append(
            check_connectivity(
                settings.preflight_connectivity_url, settings.preflight_connectivity_timeout
            )
        )
    report.checks.append(check_disk_space(settings.preflight_min_disk_gb))
    report.checks.append(check_memory(settings.preflight_min_memory_mb))
    report.checks.append(check_commands(settings.preflight_required_commands))

    for check in report.checks:
        log = logger.info if check.passed else logger.warning
        log("preflight_check", check=check.name, passed=check.passed, detail=check.detail)
    return report


def ensure_preflight(report: PreflightReport) -> None:
    """Raise ValidationError when any check failed."""
    if report.passed:
        return
    raise ValidationError(
        "Pre-flight checks failed",
        {check.name: check.detail for check in report.failures},
    )
