"""Tests for schema setup and deployment-wide index settings."""

from __future__ import annotations

import pytest

from docfuse.config import ConfigError
from docfuse.db.schema import CURRENT_VERSION, bind_index_settings, initialize, setup_store


def _columns(conn, table: str) -> set[str]:
    # table_xinfo also lists generated columns
    return {row["name"] for row in conn.execute(f"PRAGMA table_xinfo({table})").fetchall()}


def _settings(conn) -> dict[str, str]:
    return {r["key"]: r["value"] for r in conn.execute("SELECT key, value FROM index_settings")}


def test_sources_columns(tmp_db):
    assert {
        "id", "source_type", "title", "file_name", "file_size", "mime_type", "url",
        "category", "tags", "description", "tenant", "status", "error_message",
        "chunk_count", "content_hash", "created_at", "updated_at",
    } == _columns(tmp_db, "sources")


def test_chunks_columns(tmp_db):
    assert {
        "id", "source_id", "chunk_index", "content", "context", "content_for_search",
        "token_count", "metadata", "created_at",
    } == _columns(tmp_db, "chunks")


def test_schema_version_recorded(tmp_db):
    assert tmp_db.execute("SELECT MAX(version) FROM schema_version").fetchone()[0] == CURRENT_VERSION


def test_initialize_idempotent(tmp_db):
    initialize(tmp_db)
    assert tmp_db.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0] == 1


def test_setup_store_records_index_settings(tmp_db):
    assert _settings(tmp_db) == {
        "embedding_model": "openai/text-embedding-3-small",
        "embedding_dimensions": "3",
        "search_language": "english",
    }


def test_setup_store_returns_vec_table(tmp_db):
    table = setup_store(
        tmp_db,
        embedding_model="openai/text-embedding-3-small",
        dimensions=3,
        search_language="English",
    )
    assert table == "vec_chunks_openai_text_embedding_3_small"


@pytest.mark.parametrize("override", [
    {"embedding_model": "openai/text-embedding-3-large"},
    {"dimensions": 1536},
    {"search_language": "german"},
])
def test_bind_index_settings_mismatch_raises(tmp_db, override):
    kwargs = {
        "embedding_model": "openai/text-embedding-3-small",
        "dimensions": 3,
        "search_language": "english",
        **override,
    }
    with pytest.raises(ConfigError, match="mismatch"):
        bind_index_settings(tmp_db, **kwargs)
