"""
CLI: ``shipyard plugins`` — available plugins, their hooks and arguments.
"""

from __future__ import annotations

import typer
from rich.table import Table

from shipyard.cli.utils import console, print_json
from shipyard.plugins import get_plugin, list_plugins


def plugins(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List registered plugins."""
    rows = []
    for name in list_plugins():
        cls = get_plugin(name)
        rows.append(
            {
                "name": name,
                "description": cls.description,
                "depends_on": list(cls.depends_on),
                "hooks": [hook.value for hook in cls.hooks],
                "args": dict(cls.args),
            }
        )

    if json_out:
        print_json(rows)
        return

    table = Table(title="Plugins")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    table.add_column("Hooks")
    table.add_column("Arguments", style="dim")
    for row in rows:
        table.add_row(
            row["name"],
            row["description"],
            ", ".join(row["hooks"]),
            ", ".join(f"{k}={v!r}" for k, v in row["args"].items()),
        )
    console.print(table)
