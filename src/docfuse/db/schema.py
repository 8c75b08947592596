"""Schema initialization and deployment-wide index settings."""

from __future__ import annotations

import sqlite3

from docfuse.config import ConfigError

CURRENT_VERSION = 1


def initialize(conn: sqlite3.Connection) -> None:
    """Initialize the database schema via the migration runner (idempotent)."""
    from docfuse.db.migrations import run_migrations

    run_migrations(conn)


def bind_index_settings(
    conn: sqlite3.Connection,
    *,
    embedding_model: str,
    dimensions: int,
    search_language: str,
) -> None:
    """Record the embedding model and search language, or verify them.

    The first call on a fresh database stores the values. Later calls must
    pass the same values; vectors from another model or an index built for
    another language would silently degrade retrieval.

    Raises:
        ConfigError: If any value differs from what the database was built with.
    """
    wanted = {
        "embedding_model": embedding_model,
        "embedding_dimensions": str(dimensions),
        "search_language": search_language.lower(),
    }
    stored = {
        r["key"]: r["value"]
        for r in conn.execute("SELECT key, value FROM index_settings").fetchall()
    }

    for key, value in wanted.items():
        if key in stored and stored[key] != value:
            raise ConfigError(
                f"Index setting mismatch for '{key}'.\n"
                f"  Database was built with:  {stored[key]}\n"
                f"  Config has:               {value}\n"
                "  Re-ingest into a new database or restore the original setting."
            )

    missing = [(k, v) for k, v in wanted.items() if k not in stored]
    if missing:
        conn.executemany(
            "INSERT INTO index_settings (key, value) VALUES (?, ?)", missing
        )


def setup_store(
    conn: sqlite3.Connection,
    *,
    embedding_model: str,
    dimensions: int,
    search_language: str,
) -> str:
    """Prepare a connection for ingestion and search. Returns the vec table name.

    Runs migrations, binds (or verifies) the index settings, and creates the
    FTS5 index and the model's vec table when missing.
    """
    from docfuse.db.fulltext import ensure_fts_table
    from docfuse.db.vectors import ensure_vec_table, model_to_slug

    initialize(conn)
    bind_index_settings(
        conn,
        embedding_model=embedding_model,
        dimensions=dimensions,
        search_language=search_language,
    )
    ensure_fts_table(conn, search_language)
    return ensure_vec_table(conn, model_to_slug(embedding_model), dimensions)
