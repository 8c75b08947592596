"""Tests for hybrid retrieval: widening, fusion, ordering and degradation."""

from __future__ import annotations

import asyncio
import itertools
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docfuse.config import ConfigError
from docfuse.db.models import Chunk, SearchFilters, Source
from docfuse.errors import ValidationError
from docfuse.ingest.vectorizer import Vectorizer, VectorizerConfig
from docfuse.rag.retriever import (
    RetrievalEngine,
    RetrieverConfig,
    fuse_scores,
    normalize_text_rank,
)

QUERY = [1.0, 0.0, 0.0]

_ids = itertools.count()


def _add_source(repo, chunks, *, status="completed", category=None, title="Doc"):
    """Insert a source with (content, embedding) chunks and drive it to *status*."""
    source_id = f"src-{next(_ids)}"
    repo.add_source(Source(id=source_id, source_type="text", title=title, category=category))
    if status == "pending":
        return source_id
    repo.update_source_status(source_id, "processing")
    repo.add_chunks(
        [
            Chunk(source_id=source_id, chunk_index=i, content=content, embedding=list(vec))
            for i, (content, vec) in enumerate(chunks)
        ]
    )
    if status == "completed":
        repo.update_source_status(source_id, "completed", chunk_count=len(chunks))
    elif status == "failed":
        repo.update_source_status(source_id, "failed", error_message="boom")
    return source_id


def _engine(repo, **cfg) -> RetrievalEngine:
    vectorizer = Vectorizer(VectorizerConfig(dimensions=3, pace_seconds=0.0))
    return RetrievalEngine(repo, vectorizer, RetrieverConfig(**cfg))


def _query_embedding(vector=QUERY):
    async def _call(model, input, **kwargs):
        response = MagicMock()
        response.data = [{"index": 0, "embedding": list(vector)}]
        return response

    return patch("docfuse.rag.llm_client.litellm.aembedding", AsyncMock(side_effect=_call))


# ------------------------------------------------------------------
# Pure scoring
# ------------------------------------------------------------------


def test_normalize_text_rank():
    assert normalize_text_rank(None) == 0.0
    assert normalize_text_rank(0.0) == 0.0
    assert normalize_text_rank(-3.0) == pytest.approx(0.75)
    # stronger match → higher rank, always below 1
    assert normalize_text_rank(-1.0) < normalize_text_rank(-10.0) < 1.0


def test_fuse_scores():
    assert fuse_scores(0.8, 0.5) == pytest.approx(0.7 * 0.8 + 0.3 * 0.5)
    assert fuse_scores(0.8, 0.5, 1.0, 0.0) == pytest.approx(0.8)


# ------------------------------------------------------------------
# search()
# ------------------------------------------------------------------


def test_only_completed_sources_are_searchable(repo):
    done = _add_source(repo, [("refund rules apply", QUERY)])
    _add_source(repo, [("refund rules draft", QUERY)], status="processing")
    _add_source(repo, [("refund rules broken", QUERY)], status="failed")
    _add_source(repo, [], status="pending")

    results = _engine(repo).search("refund rules", QUERY)
    assert {r.source_id for r in results} == {done}


def test_lexical_match_widens_candidates(repo):
    sid = _add_source(repo, [("The refund window is seven days", [0.0, 1.0, 0.0])])
    [result] = _engine(repo).search("refund period", QUERY)
    assert result.source_id == sid
    assert result.vector_similarity == pytest.approx(0.0, abs=1e-6)
    assert result.text_rank > 0
    assert result.combined_score == pytest.approx(0.3 * result.text_rank, abs=1e-6)


def test_chunk_without_either_signal_is_excluded(repo):
    _add_source(repo, [("shipping takes a week", [0.0, 1.0, 0.0])])
    assert _engine(repo).search("refund", QUERY) == []


def test_lexical_match_lifts_ranking(repo):
    _add_source(repo, [
        ("unrelated words entirely", [1.0, 0.1, 0.0]),
        ("refund policy details", [1.0, 0.1, 0.0]),
    ])
    results = _engine(repo).search("refund", QUERY)
    assert results[0].content == "refund policy details"
    assert results[0].combined_score > results[1].combined_score


def test_vector_weight_only_matches_vector_search(repo):
    _add_source(repo, [
        ("alpha text", [1.0, 0.0, 0.0]),
        ("beta text", [1.0, 0.5, 0.0]),
        ("gamma text", [1.0, 0.9, 0.0]),
    ])
    engine = _engine(repo)
    hybrid = engine.search("nothing matches", QUERY, vector_weight=1.0, bm25_weight=0.0)
    vector = engine.vector_search(QUERY)
    assert [r.chunk_id for r in hybrid] == [r.chunk_id for r in vector]
    for h, v in zip(hybrid, vector):
        assert h.combined_score == pytest.approx(v.combined_score)
        assert h.combined_score == pytest.approx(h.vector_similarity)


def test_vector_search_has_no_lexical_component(repo):
    _add_source(repo, [("refund", QUERY), ("refund too", [0.0, 1.0, 0.0])])
    results = _engine(repo).vector_search(QUERY)
    assert [r.content for r in results] == ["refund"]
    assert results[0].text_rank == 0.0


def test_ties_break_by_chunk_index_then_source_age(repo):
    older = _add_source(repo, [("filler chunk here", [0.0, 0.0, 1.0]), ("same text", QUERY)])
    newer = _add_source(repo, [("same text", QUERY)])
    results = _engine(repo).search("same text", QUERY)
    top = [(r.source_id, r.chunk_index) for r in results[:2]]
    assert top == [(newer, 0), (older, 1)]

    third = _add_source(repo, [("same text", QUERY)])
    results = _engine(repo).search("same text", QUERY)
    index0 = [r.source_id for r in results if r.chunk_index == 0 and r.content == "same text"]
    assert index0 == [newer, third]


def test_results_are_reproducible(repo):
    for _ in range(3):
        _add_source(repo, [("repeat me", QUERY), ("repeat me", QUERY)])
    engine = _engine(repo)
    first = [r.chunk_id for r in engine.search("repeat", QUERY)]
    assert first == [r.chunk_id for r in engine.search("repeat", QUERY)]


def test_filters_and_limit(repo):
    policy = _add_source(repo, [("refund a", QUERY), ("refund b", QUERY)], category="policy")
    _add_source(repo, [("refund c", QUERY)], category="manual")

    results = _engine(repo).search("refund", QUERY, filters=SearchFilters(category="policy"))
    assert {r.source_id for r in results} == {policy}
    assert len(_engine(repo).search("refund", QUERY, max_results=2)) == 2


def test_result_carries_source_attribution(repo):
    _add_source(repo, [("refund rules", QUERY)], title="Store policy")
    [r] = _engine(repo).search("refund", QUERY)
    assert r.source_title == "Store policy"
    assert r.source_type == "text"
    assert r.metadata == {}
    assert r.context is None


def test_search_language_mismatch_raises(repo):
    with pytest.raises(ConfigError, match="language"):
        _engine(repo).search("refund", QUERY, search_language="german")


@pytest.mark.parametrize("kwargs", [
    {"max_results": 0},
    {"vector_weight": -0.1},
    {"bm25_weight": -1.0},
    {"vector_weight": 0.0, "bm25_weight": 0.0},
])
def test_invalid_parameters_raise(repo, kwargs):
    with pytest.raises(ValidationError):
        _engine(repo).search("refund", QUERY, **kwargs)


# ------------------------------------------------------------------
# query() never raises
# ------------------------------------------------------------------


def test_query_returns_results(repo):
    _add_source(repo, [("refund rules", QUERY)])
    with _query_embedding():
        response = asyncio.run(_engine(repo).query("refund"))
    assert response.message is None
    assert [r.content for r in response.results] == ["refund rules"]


def test_query_empty_text(repo):
    response = asyncio.run(_engine(repo).query("   "))
    assert response.results == []
    assert response.message == "Query is empty."


def test_query_no_matches(repo):
    with _query_embedding():
        response = asyncio.run(_engine(repo).query("refund"))
    assert response.results == []
    assert response.message == "No matching content found."


def test_query_embedding_failure_degrades(repo):
    with patch(
        "docfuse.rag.llm_client.litellm.aembedding",
        AsyncMock(side_effect=RuntimeError("provider down")),
    ):
        response = asyncio.run(_engine(repo).query("refund"))
    assert response.results == []
    assert "temporarily unavailable" in response.message


def test_query_language_mismatch_degrades(repo):
    with _query_embedding():
        response = asyncio.run(_engine(repo, search_language="german").query("refund"))
    assert response.results == []
    assert "temporarily unavailable" in response.message


def test_query_without_vectorizer(repo):
    response = asyncio.run(RetrievalEngine(repo).query("refund"))
    assert response.results == []
    assert "unavailable" in response.message


def test_query_hybrid_disabled_uses_vector_only(repo):
    _add_source(repo, [("refund lexical only", [0.0, 1.0, 0.0])])
    with _query_embedding():
        hybrid = asyncio.run(_engine(repo).query("refund"))
        vector_only = asyncio.run(_engine(repo, hybrid=False).query("refund"))
        forced = asyncio.run(_engine(repo).query("refund", vector_only=True))
    assert len(hybrid.results) == 1
    assert vector_only.results == []
    assert forced.results == []


# ------------------------------------------------------------------
# Zero-norm vectors
# ------------------------------------------------------------------


def test_zero_vector_chunk_still_ranks_by_lexical_match(repo):
    sid = _add_source(repo, [("refund policy details here", [0.0, 0.0, 0.0])])
    [result] = _engine(repo).search("refund", QUERY)
    assert result.source_id == sid
    assert result.vector_similarity == 0.0
    assert result.text_rank > 0
    assert result.combined_score == pytest.approx(0.3 * result.text_rank)


def test_zero_vector_query_falls_back_to_lexical(repo):
    _add_source(repo, [("refund rules", QUERY), ("shipping rules", [0.0, 1.0, 0.0])])
    with _query_embedding([0.0, 0.0, 0.0]):
        response = asyncio.run(_engine(repo).query("refund"))
    assert [r.content for r in response.results] == ["refund rules"]
    assert response.results[0].vector_similarity == 0.0


def test_query_unexpected_error_degrades(repo):
    _add_source(repo, [("refund rules", QUERY)])
    engine = _engine(repo)
    with _query_embedding(), patch.object(engine, "search", side_effect=TypeError("bad row")):
        response = asyncio.run(engine.query("refund"))
    assert response.results == []
    assert "temporarily unavailable" in response.message
