"""Shipyard deploy — supervised rollouts of containerized apps.

Takes a declarative application description and moves it onto a host:
resolve ports, render a compose definition, start it (optionally beside
production as a staging instance), verify health, cut over, verify again,
and record the result so later rollouts and rollbacks stay consistent.

Why This Matters:
    A deploy that fails half-way must leave production exactly as it was,
    or put back exactly what was there. That needs one durable record of
    what runs where (the registry), one authority for host ports, and one
    state machine deciding where every failure leads.

Key Concepts:
    AppConfig / OrchestratorSettings: Validated per-app and per-process
        configuration.
    RegistryStore: JSON document of ServiceRecords with version history.
    PortResolver: Registry-aware host port allocation.
    HealthVerifier: Probe-kind detection plus retrying probes.
    HookDispatcher: Named extension points for plugins.
    DeploymentOrchestrator: The stage machine; returns DeploymentResult.
    RollbackManager: Restores recorded versions.
    CleanupManager: Removes an app and its record.

Architecture::

    ┌──────────────────────────────────────────────────────────────┐
    │                  DeploymentOrchestrator                       │
    ├──────────────┬──────────────┬──────────────┬─────────────────┤
    │ PortResolver │ HealthVerif. │ HookDispatch │ RollbackManager │
    ├──────────────┴──────────────┴──────────────┴─────────────────┤
    │  RegistryStore (JSON, atomic)  │  ContainerManager (docker)   │
    ├────────────────────────────────┼─────────────────────────────┤
    │  compose rendering (PyYAML)    │  NginxProxy                  │
    └────────────────────────────────┴─────────────────────────────┘

Related Modules:
    - :mod:`shipyard.plugins` — built-in plugins
    - :mod:`shipyard.cli.deploy` — CLI commands

Tags:
    deploy, containers, docker, orchestration, rollback, health-check
"""

from __future__ import annotations

from shipyard.deploy.cleanup import CleanupManager, CleanupResult
from shipyard.deploy.config import AppConfig, HealthCheckType, OrchestratorSettings, load_config
from shipyard.deploy.health import HealthResult, HealthVerifier
from shipyard.deploy.hooks import BLOCKING_HOOKS, HookDispatcher, HookEvent, HookName
from shipyard.deploy.models import PortMapping, RouteType, ServiceRecord, ServiceStatus, VersionSnapshot
from shipyard.deploy.orchestrator import DeploymentAttempt, DeploymentOrchestrator
from shipyard.deploy.ports import PortResolver
from shipyard.deploy.registry import RegistryStore
from shipyard.deploy.results import DeploymentResult, OverallStatus, Stage
from shipyard.deploy.rollback import Restored, RollbackManager

__all__ = [
    "AppConfig",
    "BLOCKING_HOOKS",
    "CleanupManager",
    "CleanupResult",
    "DeploymentAttempt",
    "DeploymentOrchestrator",
    "DeploymentResult",
    "HealthCheckType",
    "HealthResult",
    "HealthVerifier",
    "HookDispatcher",
    "HookEvent",
    "HookName",
    "OrchestratorSettings",
    "OverallStatus",
    "PortMapping",
    "PortResolver",
    "RegistryStore",
    "Restored",
    "RollbackManager",
    "RouteType",
    "ServiceRecord",
    "ServiceStatus",
    "Stage",
    "VersionSnapshot",
    "load_config",
]
