"""Shared pytest fixtures."""

from __future__ import annotations

import os

# Use litellm's bundled model cost map; its background network fetch can
# deadlock test collection when offline.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import pytest
import structlog

from docfuse.db.connection import Database
from docfuse.db.repository import Repository
from docfuse.db.schema import setup_store

TEST_MODEL = "openai/text-embedding-3-small"
TEST_DIMS = 3


@pytest.fixture(autouse=True)
def _reset_structlog():
    """CLI runs bind loggers to CliRunner's streams; drop that config after each test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema, FTS and a 3-dim vec table, closed after test."""
    db = Database(tmp_path / ".docfuse.db")
    conn = db.connect()
    setup_store(conn, embedding_model=TEST_MODEL, dimensions=TEST_DIMS, search_language="english")
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db, "vec_chunks_openai_text_embedding_3_small")
