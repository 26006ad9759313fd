"""
CLI: ``shipyard status | list | history | url`` — read-only registry views.
"""

from __future__ import annotations

import typer
from rich.table import Table

from shipyard.cli.utils import console, err_console, fail, make_context, make_registry, print_json, status_style
from shipyard.core.errors import ShipyardError
from shipyard.deploy.compose import primary_container
from shipyard.deploy.container import ContainerManager
from shipyard.deploy.rollback import config_from_record


def status(
    app_name: str = typer.Argument(..., help="Registered application name."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show the registry record and runtime state of one application."""
    settings, ctx = make_context()
    try:
        record = make_registry(settings, ctx).get(app_name)
    except ShipyardError as e:
        fail(e)

    container = primary_container(config_from_record(record))
    try:
        runtime = ContainerManager(compose_command=settings.compose_command).status(container).value
    except ShipyardError as e:
        err_console.print(f"[yellow]Container state unavailable:[/yellow] {e.message}")
        runtime = "unknown"

    if json_out:
        payload = record.model_dump(mode="json")
        payload["container"] = {"name": container, "state": runtime}
        print_json(payload)
        return

    table = Table(title=f"Service: {record.app_name}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    style = status_style(record.status.value)
    table.add_row("Status", f"[{style}]{record.status.value}[/{style}]")
    table.add_row("Image", f"{record.image}:{record.tag}")
    table.add_row("Ports", ", ".join(str(p) for p in record.ports) or "-")
    table.add_row("Domain", record.domain)
    table.add_row("Route", f"{record.route_type.value} {record.route}".strip())
    table.add_row("Persistent", "yes" if record.persistent else "no")
    table.add_row("Container", f"{container} ({runtime})")
    table.add_row("Updated", record.updated_at.isoformat())
    console.print(table)


def list_services(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List registered applications."""
    settings, ctx = make_context()
    try:
        records = make_registry(settings, ctx).records()
    except ShipyardError as e:
        fail(e)

    if json_out:
        print_json([r.model_dump(mode="json") for r in records])
        return
    if not records:
        console.print("[dim]No services registered.[/dim]")
        return

    table = Table(title="Registered Services")
    table.add_column("App", style="cyan")
    table.add_column("Status")
    table.add_column("Image")
    table.add_column("Ports")
    table.add_column("Route")
    for record in records:
        style = status_style(record.status.value)
        table.add_row(
            record.app_name,
            f"[{style}]{record.status.value}[/{style}]",
            f"{record.image}:{record.tag}",
            ", ".join(str(p) for p in record.ports),
            f"{record.route_type.value} {record.route}".strip(),
        )
    console.print(table)


def history(
    app_name: str = typer.Argument(..., help="Registered application name."),
    limit: int = typer.Option(10, "--limit", "-n", help="Newest entries to show."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show recorded versions, newest first."""
    settings, ctx = make_context()
    try:
        snapshots = make_registry(settings, ctx).history(app_name, max_entries=limit)
    except ShipyardError as e:
        fail(e)

    if json_out:
        print_json([s.model_dump(mode="json") for s in snapshots])
        return

    table = Table(title=f"Version history: {app_name}")
    table.add_column("Deployed", style="dim")
    table.add_column("Image")
    table.add_column("Tag", style="cyan")
    table.add_column("Ports")
    table.add_column("Digest")
    for snapshot in snapshots:
        table.add_row(
            snapshot.timestamp.isoformat(),
            snapshot.image,
            snapshot.tag,
            ", ".join(str(p) for p in snapshot.ports),
            snapshot.config_digest[:12],
        )
    console.print(table)


def url(
    app_name: str = typer.Argument(..., help="Registered application name."),
) -> None:
    """Print the public URL of an application."""
    settings, ctx = make_context()
    try:
        typer.echo(make_registry(settings, ctx).service_url(app_name))
    except ShipyardError as e:
        fail(e)
