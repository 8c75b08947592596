"""docfuse ingest — extract, chunk, enrich, embed and index one source.

Input (exactly one):
  --file PATH   .txt .md .rst .csv .log .pdf
  --url URL     http(s) page, HTML stripped to text
  --text TEXT   raw text

Identical content that is already completed is skipped.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from docfuse.cli.errors import (
    err_extraction,
    err_ingestion_failed,
    err_no_api_key,
    err_one_input,
)
from docfuse.cli.store import DEFAULT_DB, load_cli_config, open_store
from docfuse.errors import DocfuseError
from docfuse.ingest.extract import extract_file, fetch_url, normalize_text
from docfuse.ingest.orchestrator import IngestionOrchestrator, content_hash
from docfuse.rag.llm_client import validate_api_key

console = Console()

_TITLE_CHARS = 60


def ingest_cmd(
    file: Annotated[
        Path | None,
        typer.Option("--file", "-f", help="Path of a text, markdown or PDF file."),
    ] = None,
    url: Annotated[
        str | None,
        typer.Option("--url", "-u", help="http(s) URL to fetch."),
    ] = None,
    text: Annotated[
        str | None,
        typer.Option("--text", "-t", help="Raw text to ingest."),
    ] = None,
    title: Annotated[
        str | None,
        typer.Option("--title", help="Source title (defaults to file name, URL or text start)."),
    ] = None,
    category: Annotated[
        str | None,
        typer.Option("--category", "-c", help="Category used as a search filter."),
    ] = None,
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", help="Tag (repeatable)."),
    ] = None,
    description: Annotated[
        str | None,
        typer.Option("--description", help="Free-text description."),
    ] = None,
    tenant: Annotated[
        str | None,
        typer.Option("--tenant", help="Tenant label used as a search filter."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .docfuse.db (created if missing)."),
    ] = DEFAULT_DB,
) -> None:
    """Ingest one source into the knowledge base."""
    if sum(x is not None for x in (file, url, text)) != 1:
        console.print(err_one_input())
        raise typer.Exit(1)

    cfg = load_cli_config(console)

    # ---- Extract ----
    fields: dict = {}
    try:
        if file is not None:
            extracted = extract_file(file)
            raw_text = extracted.text
            source_type = "file"
            fields = {
                "file_name": extracted.file_name,
                "file_size": extracted.file_size,
                "mime_type": extracted.mime_type,
            }
            default_title = extracted.file_name
        elif url is not None:
            with console.status(f"Fetching {url}…"):
                raw_text = fetch_url(url)
            source_type = "url"
            fields = {"url": url}
            default_title = url
        else:
            raw_text = normalize_text(text or "")
            source_type = "text"
            default_title = raw_text[:_TITLE_CHARS] or "Untitled"
    except DocfuseError as exc:
        console.print(err_extraction(exc))
        raise typer.Exit(1) from exc

    # ---- API keys ----
    try:
        validate_api_key(cfg.embedding.model)
        validate_api_key(cfg.enrichment.model)
    except EnvironmentError as exc:
        console.print(err_no_api_key(str(exc)))
        raise typer.Exit(1) from exc

    conn, repo = open_store(db, cfg, console, must_exist=False)
    try:
        orchestrator = IngestionOrchestrator.from_config(repo, cfg)

        # ---- Deduplication ----
        text_hash = content_hash(raw_text)
        duplicate = orchestrator.find_duplicate(text_hash)
        if duplicate is not None:
            console.print(
                f"[dim]↷ Unchanged — already ingested as {duplicate.id} "
                f"({duplicate.chunk_count} chunks)[/]"
            )
            return

        try:
            created = orchestrator.create_source(
                source_type,
                title or default_title,
                category=category,
                tags=tag or [],
                description=description,
                tenant=tenant,
                content_hash=text_hash,
                **fields,
            )
        except DocfuseError as exc:
            console.print(err_extraction(exc))
            raise typer.Exit(1) from exc

        console.print(f"[bold]→ {created.title}[/]  [dim]{created.id}[/]")

        # ---- Pipeline ----
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            prog.add_task("Chunking, enriching and embedding…", total=None)
            report = asyncio.run(orchestrator.run_ingestion(created.id, raw_text))

        if not report.ok:
            console.print(err_ingestion_failed(created.id, report.error))
            raise typer.Exit(1)

        console.print(f"  [green]✓[/] {report.chunk_count} chunks indexed")
        if report.fallback_count:
            console.print(
                f"  [yellow]⚠[/] {report.fallback_count} chunks indexed without context "
                "(enrichment failed)"
            )
    finally:
        conn.close()
