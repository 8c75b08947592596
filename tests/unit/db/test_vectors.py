"""Tests for per-model sqlite-vec virtual tables."""

from __future__ import annotations

import pytest

from docfuse.db.vectors import ensure_vec_table, model_to_slug, serialize, vec_table_name


@pytest.mark.parametrize("model,expected", [
    ("openai/text-embedding-3-small", "openai_text_embedding_3_small"),
    ("cohere/embed-english-v3.0", "cohere_embed_english_v3_0"),
    ("ollama/nomic-embed-text", "ollama_nomic_embed_text"),
])
def test_model_to_slug(model, expected):
    assert model_to_slug(model) == expected


def test_vec_table_name():
    assert vec_table_name("openai_text_embedding_3_small") == "vec_chunks_openai_text_embedding_3_small"


def test_ensure_vec_table_idempotent(tmp_db):
    slug = model_to_slug("openai/text-embedding-3-small")
    assert ensure_vec_table(tmp_db, slug, 3) == ensure_vec_table(tmp_db, slug, 3)


def test_ensure_vec_table_rejects_bad_slug(tmp_db):
    with pytest.raises(ValueError):
        ensure_vec_table(tmp_db, "bad-slug; DROP TABLE chunks", 3)


def test_ensure_vec_table_rejects_zero_dimensions(tmp_db):
    with pytest.raises(ValueError):
        ensure_vec_table(tmp_db, "some_model", 0)


def test_vec_table_uses_cosine_distance(tmp_db):
    table = ensure_vec_table(tmp_db, "cosine_check", 3)
    tmp_db.execute(f"INSERT INTO {table}(rowid, embedding) VALUES (1, ?)", (serialize([2.0, 0.0, 0.0]),))
    tmp_db.execute(f"INSERT INTO {table}(rowid, embedding) VALUES (2, ?)", (serialize([0.0, 1.0, 0.0]),))

    rows = tmp_db.execute(
        f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? AND k = 2 ORDER BY distance",
        (serialize([1.0, 0.0, 0.0]),),
    ).fetchall()
    assert [r["rowid"] for r in rows] == [1, 2]
    # cosine ignores magnitude: same direction → distance 0, orthogonal → 1
    assert rows[0]["distance"] == pytest.approx(0.0, abs=1e-6)
    assert rows[1]["distance"] == pytest.approx(1.0, abs=1e-6)
