"""Shared CLI helpers: config loading and store opening."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import typer
from rich.console import Console

from docfuse.cli.errors import err_ambiguous_id, err_config, err_no_db, err_source_not_found
from docfuse.config import ConfigError, DocfuseConfig, load_config
from docfuse.db.connection import Database
from docfuse.db.models import Source
from docfuse.db.repository import Repository
from docfuse.db.schema import setup_store
from docfuse.log import configure_logging

DEFAULT_DB = Path(".docfuse.db")


def load_cli_config(console: Console) -> DocfuseConfig:
    """Load config and configure logging, or print the error and exit 1."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    configure_logging(cfg.logging.level, json_output=cfg.logging.json)
    return cfg


def open_store(
    db: Path, cfg: DocfuseConfig, console: Console, *, must_exist: bool = True
) -> tuple[sqlite3.Connection, Repository]:
    """Open *db*, bind it to the configured model and language, and wrap it."""
    if must_exist and not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    conn = Database(db).connect()
    try:
        vec_table = setup_store(
            conn,
            embedding_model=cfg.embedding.model,
            dimensions=cfg.embedding.dimensions,
            search_language=cfg.search.language,
        )
    except ConfigError as exc:
        conn.close()
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    return conn, Repository(conn, vec_table)


def resolve_source(repo: Repository, source_id: str, console: Console) -> Source:
    """Look up a source by full id or unique id prefix, or print the error and exit 1.

    ``docfuse status`` lists shortened ids; any unambiguous prefix is accepted.
    """
    source = repo.get_source(source_id)
    if source is not None:
        return source

    matches = repo.find_source_ids(source_id) if source_id else []
    if len(matches) > 1:
        console.print(err_ambiguous_id(source_id, matches))
        raise typer.Exit(1)
    source = repo.get_source(matches[0]) if matches else None
    if source is None:
        console.print(err_source_not_found(source_id))
        raise typer.Exit(1)
    return source
