"""docfuse CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from docfuse.cli.ingest import ingest_cmd
from docfuse.cli.remove import reconcile_cmd, remove_cmd, reset_cmd
from docfuse.cli.search import search_cmd
from docfuse.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("docfuse")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"docfuse {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="docfuse",
    help=(
        "docfuse — contextual hybrid-search knowledge base.\n\n"
        "  docfuse ingest   Chunk, enrich, embed and index a file, URL or text.\n"
        "  docfuse search   Hybrid vector + full-text search over completed sources."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """docfuse — contextual hybrid-search knowledge base."""


app.command("ingest")(ingest_cmd)
app.command("search")(search_cmd)
app.command("status")(status_cmd)
app.command("remove")(remove_cmd)
app.command("reset")(reset_cmd)
app.command("reconcile")(reconcile_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed docfuse version."""
    typer.echo(f"docfuse {_installed_version()}")


if __name__ == "__main__":
    app()
