"""docfuse remove / reset / reconcile — source lifecycle management.

remove     deletes a source with its chunks, FTS entries and embeddings.
reset      deletes the chunks of a completed or failed source and returns it
           to pending so it can be ingested again.
reconcile  marks sources stranded in processing (dead process) as failed.

Usage:
  docfuse remove 1f0c... --yes
  docfuse reset 1f0c...
  docfuse reconcile
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from docfuse.cli.errors import err_illegal_state
from docfuse.cli.store import DEFAULT_DB, load_cli_config, open_store, resolve_source
from docfuse.errors import IllegalTransitionError
from docfuse.ingest.orchestrator import IngestionOrchestrator

console = Console()


def remove_cmd(
    source_id: Annotated[str, typer.Argument(help="Id of the source to remove.")],
    db: Annotated[Path, typer.Option("--db", help="Path to .docfuse.db.")] = DEFAULT_DB,
    yes: Annotated[
        bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")
    ] = False,
) -> None:
    """Remove a source and all its data from the knowledge base."""
    cfg = load_cli_config(console)
    conn, repo = open_store(db, cfg, console)
    try:
        existing = resolve_source(repo, source_id, console)
        source_id = existing.id

        chunk_count = repo.count_chunks(source_id)
        console.print(f"\nRemove source: [bold]{existing.title}[/]  [dim]{source_id}[/]")
        console.print(f"  Status: {existing.status}  |  Chunks: {chunk_count}")

        if not yes:
            if not typer.confirm("Confirm removal?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)

        repo.delete_source(source_id)
        console.print(f"\n[green]✓[/] Removed: {existing.title}")
        console.print(f"  {chunk_count} chunks deleted")
    finally:
        conn.close()


def reset_cmd(
    source_id: Annotated[str, typer.Argument(help="Id of the source to reset.")],
    db: Annotated[Path, typer.Option("--db", help="Path to .docfuse.db.")] = DEFAULT_DB,
) -> None:
    """Delete a source's chunks and return it to pending."""
    cfg = load_cli_config(console)
    conn, repo = open_store(db, cfg, console)
    try:
        source_id = resolve_source(repo, source_id, console).id

        orchestrator = IngestionOrchestrator.from_config(repo, cfg)
        try:
            status = orchestrator.reset_source(source_id)
        except IllegalTransitionError as exc:
            console.print(err_illegal_state(exc.message))
            raise typer.Exit(1) from exc

        console.print(f"[green]✓[/] Reset: {status.title} → {status.status}")
    finally:
        conn.close()


def reconcile_cmd(
    db: Annotated[Path, typer.Option("--db", help="Path to .docfuse.db.")] = DEFAULT_DB,
) -> None:
    """Mark sources stuck in processing as failed.

    Only run this when no ingestion is active against the database.
    """
    cfg = load_cli_config(console)
    conn, repo = open_store(db, cfg, console)
    try:
        stuck = IngestionOrchestrator.from_config(repo, cfg).reconcile_stuck_sources()
    finally:
        conn.close()

    if not stuck:
        console.print("[dim]No stuck sources.[/]")
        return
    for source_id in stuck:
        console.print(f"  [yellow]↺[/] {source_id} → failed")
    console.print(f"[green]✓[/] {len(stuck)} source(s) reconciled")
