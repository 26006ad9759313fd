"""Core primitives shared by every Shipyard component.

- :mod:`shipyard.core.errors` — typed error hierarchy and exit codes
- :mod:`shipyard.core.logging` — structlog configuration
- :mod:`shipyard.core.redaction` — secret masking for diagnostics
- :mod:`shipyard.core.context` — explicit per-invocation context
- :mod:`shipyard.core.locks` — lock files with stale expiry
"""

from shipyard.core.context import DeployContext
from shipyard.core.errors import (
    ConfigError,
    ContainerError,
    DependencyError,
    DeploymentCancelled,
    ErrorCategory,
    ErrorContext,
    ExitCode,
    HealthCheckFailed,
    HookRejected,
    LockTimeout,
    NetworkError,
    NoPriorVersion,
    PermissionDeniedError,
    PortExhaustion,
    RegistryCorrupt,
    RestoreFailed,
    ServiceNotFound,
    ShipyardError,
    exit_code_for,
)
from shipyard.core.locks import FileLock

__all__ = [
    "DeployContext",
    "ConfigError",
    "ContainerError",
    "DependencyError",
    "DeploymentCancelled",
    "ErrorCategory",
    "ErrorContext",
    "ExitCode",
    "FileLock",
    "HealthCheckFailed",
    "HookRejected",
    "LockTimeout",
    "NetworkError",
    "NoPriorVersion",
    "PermissionDeniedError",
    "PortExhaustion",
    "RegistryCorrupt",
    "RestoreFailed",
    "ServiceNotFound",
    "ShipyardError",
    "exit_code_for",
]
