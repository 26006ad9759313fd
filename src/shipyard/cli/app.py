"""
Root Typer application for the shipyard CLI.

Exit codes: 0 success, 1 general failure (including a rolled-back
deployment), 2 configuration, 3 dependency, 4 permission, 5 network.
"""

from __future__ import annotations

import typer
from typer import Typer

from shipyard.cli import deploy, plugins, registry

app = Typer(
    name="shipyard",
    help="shipyard — supervised rollouts of containerized apps.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from shipyard import __version__

        typer.echo(f"shipyard {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """shipyard CLI — deploy, roll back, clean up and inspect applications."""


# ── Command registration ─────────────────────────────────────────────────

app.command("deploy")(deploy.deploy)
app.command("rollback")(deploy.rollback)
app.command("cleanup")(deploy.cleanup)
app.command("status")(registry.status)
app.command("list")(registry.list_services)
app.command("history")(registry.history)
app.command("url")(registry.url)
app.command("plugins")(plugins.plugins)


if __name__ == "__main__":
    app()
