"""docfuse status — list sources, or show one source in detail."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from docfuse.cli.store import DEFAULT_DB, load_cli_config, open_store, resolve_source
from docfuse.db.models import Source
from docfuse.db.repository import Repository

console = Console()

_STATUS_STYLE = {
    "pending": "dim",
    "processing": "cyan",
    "completed": "green",
    "failed": "red",
}

# ids are UUIDs; the prefix is enough to pick a source with `docfuse status ID`
_SHORT_ID_CHARS = 8


def status_cmd(
    source_id: Annotated[
        str | None, typer.Argument(help="Source id. Omit to list every source.")
    ] = None,
    db: Annotated[Path, typer.Option("--db", help="Path to .docfuse.db.")] = DEFAULT_DB,
) -> None:
    """Show ingestion status of the knowledge base."""
    cfg = load_cli_config(console)
    conn, repo = open_store(db, cfg, console)
    try:
        if source_id is None:
            _show_overview(db, repo)
            return

        _show_source(resolve_source(repo, source_id, console))
    finally:
        conn.close()


def _show_overview(db: Path, repo: Repository) -> None:
    sources = repo.list_sources()
    if not sources:
        console.print(
            Panel(
                f"[dim]{db}[/]\n[yellow]No sources yet.[/]\n"
                "  Run:  docfuse ingest --file PATH",
                title="[bold]Knowledge Base[/]",
                expand=False,
            )
        )
        return

    table = Table(title=f"Knowledge Base  [dim]{db}[/]")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", min_width=12)
    table.add_column("Type", no_wrap=True)
    table.add_column("Category", style="dim")
    table.add_column("Status", no_wrap=True)
    table.add_column("Chunks", justify="right")

    totals: dict[str, int] = {}
    for s in sources:
        totals[s.status] = totals.get(s.status, 0) + 1
        style = _STATUS_STYLE.get(s.status, "")
        table.add_row(
            s.id[:_SHORT_ID_CHARS],
            s.title,
            s.source_type,
            s.category or "",
            f"[{style}]{s.status}[/]" if style else s.status,
            str(s.chunk_count),
        )
    console.print(table)
    console.print(
        "  " + "  |  ".join(f"{status}: {n}" for status, n in sorted(totals.items()))
    )


def _show_source(source: Source) -> None:
    style = _STATUS_STYLE.get(source.status, "")
    lines = [
        f"ID:        {source.id}",
        f"Type:      {source.source_type}",
        f"Status:    [{style}]{source.status}[/]" if style else f"Status:    {source.status}",
        f"Chunks:    {source.chunk_count}",
    ]
    if source.file_name:
        lines.append(f"File:      {source.file_name} ({source.file_size or 0} bytes)")
    if source.url:
        lines.append(f"URL:       {source.url}")
    if source.category:
        lines.append(f"Category:  {source.category}")
    if source.tags:
        lines.append(f"Tags:      {', '.join(source.tags)}")
    if source.tenant:
        lines.append(f"Tenant:    {source.tenant}")
    lines.append(f"Updated:   {source.updated_at}")
    if source.error_message:
        lines.append(f"[red]Error:[/]     {source.error_message}")
    console.print(Panel("\n".join(lines), title=f"[bold]{source.title}[/]", expand=False))
