"""docfuse database layer."""

from docfuse.db.connection import Database
from docfuse.db.fulltext import build_match_query, ensure_fts_table
from docfuse.db.migrations import MIGRATIONS, run_migrations
from docfuse.db.repository import Repository
from docfuse.db.schema import bind_index_settings, initialize, setup_store
from docfuse.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "setup_store",
    "bind_index_settings",
    "run_migrations",
    "MIGRATIONS",
    "build_match_query",
    "ensure_fts_table",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
