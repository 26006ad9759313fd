"""
CLI: ``shipyard deploy | rollback | cleanup`` — commands that change a host.

Usage::

    shipyard deploy -c app.json                 # single-stage rollout
    shipyard deploy -c app.json --multi-stage   # staging, verify, cut over
    shipyard deploy -c app.json --dry-run       # render and log only

    shipyard rollback demo                      # previous version
    shipyard rollback demo --version v1.2.0     # a specific recorded tag

    shipyard cleanup demo                       # remove app and record
    shipyard cleanup demo --force --keep-data   # persistent app, keep data
"""

from __future__ import annotations

import signal
from pathlib import Path

import typer
from rich.table import Table

from shipyard.cli.utils import console, fail, load_app, make_context, make_registry, print_json, status_style
from shipyard.core.errors import ShipyardError
from shipyard.deploy.cleanup import CleanupManager
from shipyard.deploy.container import ContainerManager
from shipyard.deploy.orchestrator import DeploymentOrchestrator
from shipyard.deploy.proxy import NginxProxy
from shipyard.deploy.results import DeploymentResult
from shipyard.deploy.rollback import RollbackManager

# ── Deploy ───────────────────────────────────────────────────────────────


def deploy(
    config: Path = typer.Option(..., "--config", "-c", help="Application config (JSON)."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Render and log; change nothing."),
    multi_stage: bool = typer.Option(False, "--multi-stage", help="Deploy to staging before cutover."),
    json_out: bool = typer.Option(False, "--json", help="Output result as JSON."),
) -> None:
    """Deploy an application described by a config file."""
    settings, ctx = make_context(dry_run=dry_run)
    try:
        dispatcher, app_config = load_app(
            config,
            settings,
            ctx,
            multi_stage=True if multi_stage else None,
            dry_run=True if dry_run else None,
        )
    except ShipyardError as e:
        fail(e)

    orchestrator = DeploymentOrchestrator(ctx, settings, dispatcher=dispatcher)
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: orchestrator.cancel())
    try:
        result = orchestrator.run(app_config)
    finally:
        signal.signal(signal.SIGTERM, previous)

    if json_out:
        print_json(result.model_dump(mode="json"))
    else:
        _print_result(result)
    if result.exit_code:
        raise typer.Exit(code=result.exit_code)


def _print_result(result: DeploymentResult) -> None:
    table = Table(title=f"Deployment {result.app_name} ({result.run_id})")
    table.add_column("Stage", style="cyan")
    table.add_column("Entered")
    table.add_column("Detail")
    for transition in result.stages:
        table.add_row(transition.stage.value, transition.entered_at, transition.detail)
    console.print(table)

    status = result.overall_status.value
    console.print(f"Result: [{status_style(status)}]{status}[/{status_style(status)}]", highlight=False)
    if result.ports:
        console.print(f"Ports: {', '.join(str(p) for p in result.ports)}")
    if result.detail:
        console.print(f"Detail: {result.detail}", highlight=False)
    if result.dry_run:
        console.print("[dim]Dry run: nothing was changed.[/dim]")


# ── Rollback ─────────────────────────────────────────────────────────────


def rollback(
    app_name: str = typer.Argument(..., help="Registered application name."),
    version: str | None = typer.Option(None, "--version", "-v", help="Recorded tag to restore."),
    config: Path | None = typer.Option(None, "--config", "-c", help="Application config (JSON)."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report the target; change nothing."),
    json_out: bool = typer.Option(False, "--json", help="Output result as JSON."),
) -> None:
    """Restore the previous (or a specific) recorded version."""
    settings, ctx = make_context(dry_run=dry_run)
    try:
        dispatcher = None
        app_config = None
        if config is not None:
            dispatcher, app_config = load_app(config, settings, ctx)
        registry = make_registry(settings, ctx)
        manager = RollbackManager(
            ctx,
            registry,
            ContainerManager(compose_command=settings.compose_command),
            proxy=NginxProxy(ctx, proxy_container=settings.proxy_container),
            dispatcher=dispatcher,
            lock_timeout=settings.lock_timeout,
        )
        restored = manager.rollback(app_name, target_tag=version, config=app_config)
    except ShipyardError as e:
        fail(e)

    if json_out:
        print_json(
            {
                "app_name": restored.app_name,
                "restored": restored.ref,
                "replaced": f"{restored.replaced_image}:{restored.replaced_tag}",
                "ports": [str(p) for p in restored.ports],
                "dry_run": restored.dry_run,
            }
        )
        return
    prefix = "Would restore" if restored.dry_run else "Restored"
    console.print(
        f"[green]{prefix}[/green] {restored.app_name}: "
        f"{restored.replaced_image}:{restored.replaced_tag} -> {restored.ref}",
        highlight=False,
    )


# ── Cleanup ──────────────────────────────────────────────────────────────


def cleanup(
    app_name: str = typer.Argument(..., help="Application to remove."),
    force: bool = typer.Option(False, "--force", help="Remove even a persistent service."),
    keep_data: bool = typer.Option(False, "--keep-data", help="Keep the data directory."),
    config: Path | None = typer.Option(None, "--config", "-c", help="Application config (JSON)."),
    dry_run: bool = typer.Option(False, "--dry-run", help="List the steps; change nothing."),
    json_out: bool = typer.Option(False, "--json", help="Output result as JSON."),
) -> None:
    """Stop an application and remove its files, proxy site and record."""
    settings, ctx = make_context(dry_run=dry_run)
    try:
        dispatcher = None
        app_config = None
        if config is not None:
            dispatcher, app_config = load_app(config, settings, ctx)
        manager = CleanupManager(
            ctx,
            make_registry(settings, ctx),
            ContainerManager(compose_command=settings.compose_command),
            proxy=NginxProxy(ctx, proxy_container=settings.proxy_container),
            dispatcher=dispatcher,
            lock_timeout=settings.lock_timeout,
        )
        result = manager.cleanup(app_name, force=force, keep_data=keep_data, config=app_config)
    except ShipyardError as e:
        fail(e)

    if json_out:
        print_json(
            {
                "app_name": result.app_name,
                "steps": result.steps,
                "dry_run": result.dry_run,
                "unregistered": result.unregistered,
            }
        )
        return
    prefix = "Would run" if result.dry_run else "Completed"
    console.print(f"[green]Cleanup of {app_name}[/green]: {prefix} {', '.join(result.steps) or 'nothing'}")
