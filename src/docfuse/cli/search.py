"""docfuse search — hybrid (or vector-only) retrieval from the command line."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from docfuse.cli.store import DEFAULT_DB, load_cli_config, open_store
from docfuse.db.models import SearchFilters
from docfuse.ingest.vectorizer import Vectorizer, VectorizerConfig
from docfuse.rag.retriever import RetrievalEngine, RetrieverConfig

console = Console()

_PREVIEW_CHARS = 120


def search_cmd(
    query: Annotated[str, typer.Argument(help="Search query.")],
    category: Annotated[
        str | None, typer.Option("--category", "-c", help="Only sources in this category.")
    ] = None,
    source_type: Annotated[
        str | None, typer.Option("--type", help="Only sources of this type (file, url, text).")
    ] = None,
    tenant: Annotated[
        str | None, typer.Option("--tenant", help="Only sources of this tenant.")
    ] = None,
    limit: Annotated[
        int | None, typer.Option("--limit", "-n", help="Maximum number of results.")
    ] = None,
    vector_only: Annotated[
        bool, typer.Option("--vector-only", help="Skip the lexical signal.")
    ] = False,
    db: Annotated[Path, typer.Option("--db", help="Path to .docfuse.db.")] = DEFAULT_DB,
) -> None:
    """Search ingested content."""
    cfg = load_cli_config(console)
    conn, repo = open_store(db, cfg, console)
    try:
        engine = RetrievalEngine(
            repo,
            Vectorizer(VectorizerConfig.from_cfg(cfg.embedding)),
            RetrieverConfig.from_cfg(cfg),
        )
        filters = SearchFilters(category=category, source_type=source_type, tenant=tenant)
        response = asyncio.run(
            engine.query(query, filters, max_results=limit, vector_only=vector_only or None)
        )
    finally:
        conn.close()

    if not response.results:
        console.print(f"[yellow]{response.message}[/]")
        return

    table = Table(show_lines=False)
    table.add_column("#", style="dim", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Vec", justify="right", style="dim")
    table.add_column("Text", justify="right", style="dim")
    table.add_column("Source")
    table.add_column("Chunk")

    for i, r in enumerate(response.results, start=1):
        preview = r.content.replace("\n", " ")
        if len(preview) > _PREVIEW_CHARS:
            preview = preview[:_PREVIEW_CHARS] + "…"
        table.add_row(
            str(i),
            f"{r.combined_score:.3f}",
            f"{r.vector_similarity:.3f}",
            f"{r.text_rank:.3f}",
            f"{r.source_title} [dim]#{r.chunk_index}[/]",
            preview,
        )
    console.print(table)
