"""Core modules for cloudplan - centralized definitions and utilities."""

from cloudplan.core.errors import (
    CloudPlanError,
    ConfigurationError,
    ExitCode,
    PermanentProviderError,
    ProviderError,
    ProvisioningFailed,
    ReadinessTimeoutError,
    RollbackError,
    StateTransitionError,
    TransientProviderError,
    ValidationError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "CloudPlanError",
    "ConfigurationError",
    "ValidationError",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "ReadinessTimeoutError",
    "RollbackError",
    "StateTransitionError",
    "ProvisioningFailed",
    "main_with_error_handling",
    "format_error_message",
]
