"""
Structured error types for Shipyard.

Every failure the orchestrator can surface is a ``ShipyardError`` subclass
carrying a category, a retry flag, structured context and the process exit
code the CLI should return. Callers never have to parse messages to decide
what happened.

Manifesto:
    - **Typed Error Hierarchy:** One error type per failure domain
    - **Explicit Exit Codes:** Each error knows which exit class it maps to
    - **Rich Context:** Errors carry app name, stage and run id for logging
    - **Error Chaining:** Original exceptions are preserved as ``cause``
    - **No Secrets:** ``to_dict()`` runs messages through redaction

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                       ShipyardError                           │
        │        (category, retryable, context, cause, exit_code)       │
        ├──────────────────────────────────────────────────────────────┤
        │  ConfigError (2)     DependencyError (3)   PermissionDenied (4)│
        │                          │                                     │
        │                      PortExhaustion                            │
        │                                                                │
        │  NetworkError (5)    RegistryError (1)     HookRejected (1)    │
        │  (retryable)             │                                     │
        │                      RegistryCorrupt                           │
        │                      ServiceNotFound       ContainerError (1)  │
        │                      LockTimeout                               │
        │                                                                │
        │  RollbackError (1)                                             │
        │      │                                                         │
        │  NoPriorVersion   RestoreFailed                                │
        └──────────────────────────────────────────────────────────────┘

Exit codes:
    ``0`` success, ``1`` general failure, ``2`` configuration error,
    ``3`` dependency/precondition error, ``4`` permission error,
    ``5`` network error.

Examples:
    >>> err = ConfigError("app_name is required").with_context(stage="validating")
    >>> err.exit_code
    2
    >>> err.to_dict()["context"]
    {'stage': 'validating'}

Guardrails:
    ❌ DON'T: Raise bare ``Exception`` from core components
    ✅ DO: Pick the subclass whose exit code matches the failure class

    ❌ DON'T: Auto-repair on ``RegistryCorrupt``
    ✅ DO: Surface it and halt the operation

Tags:
    error-handling, exception-hierarchy, exit-codes, shipyard
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shipyard.core.redaction import redact


class ExitCode(int, Enum):
    """Process exit codes surfaced to callers."""

    SUCCESS = 0
    GENERAL = 1
    CONFIG = 2
    DEPENDENCY = 3
    PERMISSION = 4
    NETWORK = 5


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"
    DEPENDENCY = "DEPENDENCY"
    PERMISSION = "PERMISSION"
    NETWORK = "NETWORK"
    REGISTRY = "REGISTRY"
    PORT = "PORT"
    HEALTH = "HEALTH"
    HOOK = "HOOK"
    CONTAINER = "CONTAINER"
    ROLLBACK = "ROLLBACK"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        app_name: Application the operation was acting on
        stage: Orchestrator stage at the time of failure
        run_id: Deployment run identifier
        port: Port involved, if any
        path: Filesystem path involved, if any
        metadata: Additional key-value pairs
    """

    app_name: str | None = None
    stage: str | None = None
    run_id: str | None = None
    port: int | None = None
    path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ["app_name", "stage", "run_id", "port", "path"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ShipyardError(Exception):
    """
    Base exception for all Shipyard errors.

    Subclasses set ``default_category``, ``default_retryable`` and
    ``exit_code`` class attributes so call sites only pass a message.

    Examples:
        >>> error = ShipyardError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.exit_code
        1
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    exit_code: int = ExitCode.GENERAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ShipyardError:
        """
        Add context to this error (fluent API).

        Usage:
            raise PortExhaustion("No free port").with_context(
                app_name="demo", port=3000
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": redact(self.message),
            "category": self.category.value,
            "retryable": self.retryable,
            "exit_code": int(self.exit_code),
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = redact(str(self.cause))
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION / PRECONDITIONS
# =============================================================================


class ConfigError(ShipyardError):
    """Malformed or missing configuration. Never retried."""

    default_category = ErrorCategory.CONFIG
    exit_code = ExitCode.CONFIG


class DependencyError(ShipyardError):
    """A precondition for the operation is not met (docker, disk, image)."""

    default_category = ErrorCategory.DEPENDENCY
    exit_code = ExitCode.DEPENDENCY


class PortExhaustion(DependencyError):
    """No free host port is left in the searched range."""

    default_category = ErrorCategory.PORT


class PermissionDeniedError(ShipyardError):
    """Filesystem or runtime permission failure."""

    default_category = ErrorCategory.PERMISSION
    exit_code = ExitCode.PERMISSION


class NetworkError(ShipyardError):
    """Network-related transient error."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True
    exit_code = ExitCode.NETWORK


# =============================================================================
# REGISTRY
# =============================================================================


class RegistryError(ShipyardError):
    """Base class for registry store failures."""

    default_category = ErrorCategory.REGISTRY


class RegistryCorrupt(RegistryError):
    """The backing registry document cannot be parsed.

    Fatal. The store is never reinitialised automatically because that
    would discard rollback history.
    """


class ServiceNotFound(RegistryError):
    """No service record exists for the requested app."""


class LockTimeout(RegistryError):
    """An exclusive lock could not be acquired in time."""

    default_retryable = True


# =============================================================================
# RUNTIME
# =============================================================================


class HookRejected(ShipyardError):
    """A callback on a blocking hook rejected the surrounding operation."""

    default_category = ErrorCategory.HOOK


class HealthCheckFailed(ShipyardError):
    """An instance did not become healthy within its probe attempts."""

    default_category = ErrorCategory.HEALTH


class DeploymentCancelled(ShipyardError):
    """The deployment was cancelled or ran past its deadline."""


class ContainerError(ShipyardError):
    """The container runtime failed to start, stop or inspect an instance."""

    default_category = ErrorCategory.CONTAINER


class RollbackError(ShipyardError):
    """Base class for rollback terminal failures."""

    default_category = ErrorCategory.ROLLBACK


class NoPriorVersion(RollbackError):
    """The version history holds nothing to roll back to."""


class RestoreFailed(RollbackError):
    """Restoring a recorded snapshot failed. Not retried."""


def exit_code_for(exc: BaseException) -> int:
    """Map any exception onto one of the public exit code classes."""
    if isinstance(exc, ShipyardError):
        return int(exc.exit_code)
    if isinstance(exc, PermissionError):
        return int(ExitCode.PERMISSION)
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return int(ExitCode.NETWORK)
    return int(ExitCode.GENERAL)


__all__ = [
    "ExitCode",
    "ErrorCategory",
    "ErrorContext",
    "ShipyardError",
    "ConfigError",
    "DependencyError",
    "PortExhaustion",
    "PermissionDeniedError",
    "NetworkError",
    "RegistryError",
    "RegistryCorrupt",
    "ServiceNotFound",
    "LockTimeout",
    "HookRejected",
    "HealthCheckFailed",
    "DeploymentCancelled",
    "ContainerError",
    "RollbackError",
    "NoPriorVersion",
    "RestoreFailed",
    "exit_code_for",
]
