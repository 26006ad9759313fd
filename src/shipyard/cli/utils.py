"""
CLI utility helpers — runtime wiring and output formatting.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console

from shipyard.core.context import DeployContext
from shipyard.core.errors import ShipyardError, exit_code_for
from shipyard.core.logging import configure_logging
from shipyard.core.redaction import redact
from shipyard.deploy.config import AppConfig, OrchestratorSettings, load_config, read_config_document
from shipyard.deploy.hooks import HookDispatcher
from shipyard.deploy.registry import RegistryStore
from shipyard.plugins import discover_plugins

console = Console()
err_console = Console(stderr=True)


# ── Runtime wiring ───────────────────────────────────────────────────────


def make_context(*, dry_run: bool = False) -> tuple[OrchestratorSettings, DeployContext]:
    """Settings from ``SHIPYARD_*`` plus a context rooted at ``base_dir``."""
    try:
        settings = OrchestratorSettings.from_env()
    except ShipyardError as e:
        fail(e)
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    return settings, DeployContext.from_settings(settings, dry_run=dry_run)


def make_registry(settings: OrchestratorSettings, ctx: DeployContext) -> RegistryStore:
    return RegistryStore(
        ctx,
        retention=settings.history_retention,
        lock_timeout=settings.lock_timeout,
        lock_stale_after=settings.lock_stale_after,
    )


def load_app(
    path: Path,
    settings: OrchestratorSettings,
    ctx: DeployContext,
    **overrides: Any,
) -> tuple[HookDispatcher, AppConfig]:
    """Read ``path``, activate the plugins it names, and validate it.

    Plugins are discovered before validation so that their argument
    defaults are merged underneath the document.
    """
    raw = read_config_document(path)
    dispatcher = HookDispatcher(max_attempts=settings.hook_max_attempts)
    discover_plugins(raw.get("plugins") or [], dispatcher, ctx)
    return dispatcher, load_config(raw, dispatcher, **overrides)


# ── Output helpers ───────────────────────────────────────────────────────


def fail(exc: BaseException) -> NoReturn:
    """Print ``exc`` (redacted) and exit with its mapped exit code."""
    message = exc.message if isinstance(exc, ShipyardError) else str(exc)
    err_console.print(f"[bold red]Error[/bold red] ({type(exc).__name__}): {redact(message)}")
    raise typer.Exit(code=int(exit_code_for(exc)))


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def status_style(value: str) -> str:
    return {
        "active": "green",
        "done": "green",
        "succeeded": "green",
        "staging": "yellow",
        "rolled_back": "yellow",
        "failed": "red",
        "cancelled": "red",
    }.get(value.lower(), "white")
