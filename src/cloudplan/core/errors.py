"""
Unified error handling for cloudplan.

This module provides the error taxonomy shared by the orchestrator and the
CLI, together with standardized exit codes.

Exit Codes:
- 0: Success
- 1: Invalid input (pre-flight, validation or configuration failure, no side effects)
- 2: Provisioning failed, rollback completed
- 3: Provisioning failed, one or more resources leaked (manual cleanup required)
- 127: Unknown/internal error
- 130: Interrupted
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    INVALID = 1
    ROLLED_BACK = 2
    LEAKED = 3
    UNKNOWN_ERROR = 127
    INTERRUPTED = 130


class CloudPlanError(Exception):
    """Base exception for cloudplan errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(CloudPlanError):
    """Raised for invalid plans: dependency cycles, unknown or duplicate ids."""

    exit_code = ExitCode.INVALID


class ValidationError(CloudPlanError):
    """Raised for bad input parameters and failed pre-flight checks."""

    exit_code = ExitCode.INVALID


class ProviderError(CloudPlanError):
    """Raised when a provider call fails."""


class TransientProviderError(ProviderError):
    """Retryable provider failure (timeouts, throttling, dependency still in use)."""


class PermanentProviderError(ProviderError):
    """Non-retryable provider failure (bad parameters, permission denied)."""


class ReadinessTimeoutError(CloudPlanError):
    """A resource did not reach its ready state within its timeout."""


class RollbackError(CloudPlanError):
    """A compensating delete failed and the resource was leaked."""


class StateTransitionError(CloudPlanError):
    """An execution state was asked to make a transition it does not allow."""


class ProvisioningFailed(CloudPlanError):
    """A run finished without provisioning every resource."""

    exit_code = ExitCode.ROLLED_BACK

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        leaked: bool = False,
        interrupted: bool = False,
    ):
        super().__init__(message, details)
        if leaked:
            self.exit_code = ExitCode.LEAKED
        elif interrupted:
            self.exit_code = ExitCode.INTERRUPTED


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI command functions that provides unified error handling.

    Catches exceptions and converts them to appropriate exit codes with
    consistent error reporting.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - CloudPlanError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except CloudPlanError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=int(e.exit_code),
                        **e.details,
                    )
                print(f"Error: {format_error_message(e)}", file=sys.stderr)
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return ExitCode.INTERRUPTED
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: CloudPlanError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
