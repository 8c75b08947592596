"""docfuse rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from docfuse.cli.errors import err_no_db
    console.print(err_no_db(".docfuse.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from docfuse.errors import DocfuseError


def err_no_api_key(detail: str) -> str:
    """No API key for the configured provider (message from validate_api_key)."""
    return (
        f"[red]Error:[/] {detail}\n"
        "  Example:  export OPENAI_API_KEY=sk-..."
    )


def err_no_db(db_path: str = ".docfuse.db") -> str:
    """No database file at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  docfuse ingest --text ... (or --file / --url) to create it."
    )


def err_config(detail: str) -> str:
    """Configuration could not be loaded or does not match the database."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {detail}\n"
        "  Check docfuse.yaml, ~/.docfuse/config.yaml and DOCFUSE_* variables."
    )


def err_one_input() -> str:
    """ingest needs exactly one of --file, --url, --text."""
    return (
        "[red]Error:[/] Give exactly one input.\n"
        "  Use one of:  --file PATH  |  --url URL  |  --text TEXT"
    )


def err_extraction(error: DocfuseError) -> str:
    """Text could not be extracted from the input."""
    return (
        f"[red]Error:[/] Could not extract text: {error.message}\n"
        "  Check the path or URL, or pass the text directly with --text."
    )


def err_ingestion_failed(source_id: str, error: DocfuseError) -> str:
    """A run ended with the source marked failed."""
    hint = {
        "validation": "Provide a longer or non-empty document.",
        "external_service": "Check the model provider status and your API key, then run:  "
        f"docfuse reset {source_id}  and ingest again.",
        "persistence": "Check disk space and database permissions, then run:  "
        f"docfuse reset {source_id}",
    }.get(error.kind, f"Run:  docfuse status {source_id}")
    return (
        f"[red]✗ Ingestion failed[/] ({error.kind}): {error.message}\n"
        f"  {hint}"
    )


def err_source_not_found(source_id: str) -> str:
    """Source id not in the database."""
    return (
        f"[yellow]Source not found:[/] '{source_id}' is not in the knowledge base.\n"
        "  Run:  docfuse status  to see all sources."
    )


def err_illegal_state(detail: str) -> str:
    """Operation not allowed in the source's current status."""
    return (
        f"[red]Error:[/] {detail}\n"
        "  A source that is still processing cannot be reset; wait for the run to end\n"
        "  or run:  docfuse reconcile  if the process that ran it has died."
    )


def err_ambiguous_id(prefix: str, matches: list[str]) -> str:
    """An id prefix matches more than one source."""
    return (
        f"[yellow]Ambiguous source id:[/] '{prefix}' matches {len(matches)} sources.\n"
        "  Give more characters of the id, or the full id from:  docfuse status"
    )
