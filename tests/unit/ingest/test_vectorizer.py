"""Tests for the batched, ordered Vectorizer."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docfuse.errors import ExternalServiceError
from docfuse.ingest.vectorizer import Vectorizer, VectorizerConfig


def _vector_for(text: str) -> list[float]:
    n = float(text.split("-")[1])
    return [n, 1.0, 0.0]


def _fake_aembedding(shuffle: bool = False):
    """An aembedding stand-in that answers each input with a distinct vector."""

    async def _call(model, input, **kwargs):
        data = [{"index": i, "embedding": _vector_for(t)} for i, t in enumerate(input)]
        if shuffle:
            data.reverse()
        response = MagicMock()
        response.data = data
        return response

    return AsyncMock(side_effect=_call)


def _cfg(**overrides) -> VectorizerConfig:
    base = {"dimensions": 3, "batch_size": 4, "pace_seconds": 0.0}
    base.update(overrides)
    return VectorizerConfig(**base)


@pytest.mark.parametrize("count", [1, 3, 4, 5, 11])
def test_embed_batch_preserves_order_across_batches(count):
    texts = [f"t-{i}" for i in range(count)]
    fake = _fake_aembedding()
    with patch("docfuse.rag.llm_client.litellm.aembedding", fake):
        vectors = asyncio.run(Vectorizer(_cfg()).embed_batch(texts))
    assert vectors == [_vector_for(t) for t in texts]
    assert fake.call_count == -(-count // 4)


def test_embed_batch_reorders_by_response_index():
    texts = ["t-0", "t-1", "t-2"]
    with patch("docfuse.rag.llm_client.litellm.aembedding", _fake_aembedding(shuffle=True)):
        vectors = asyncio.run(Vectorizer(_cfg()).embed_batch(texts))
    assert vectors == [_vector_for(t) for t in texts]


def test_batches_are_sent_sequentially_with_model():
    fake = _fake_aembedding()
    with patch("docfuse.rag.llm_client.litellm.aembedding", fake):
        asyncio.run(Vectorizer(_cfg(batch_size=2, model="openai/x")).embed_batch(
            ["t-0", "t-1", "t-2"]
        ))
    batches = [c.kwargs["input"] for c in fake.call_args_list]
    assert batches == [["t-0", "t-1"], ["t-2"]]
    assert {c.kwargs["model"] for c in fake.call_args_list} == {"openai/x"}


def test_embed_one_returns_single_vector():
    with patch("docfuse.rag.llm_client.litellm.aembedding", _fake_aembedding()):
        assert asyncio.run(Vectorizer(_cfg()).embed_one("t-7")) == [7.0, 1.0, 0.0]


def test_wrong_dimension_raises():
    with patch("docfuse.rag.llm_client.litellm.aembedding", _fake_aembedding()):
        with pytest.raises(ExternalServiceError, match="dimension"):
            asyncio.run(Vectorizer(_cfg(dimensions=1536)).embed_batch(["t-0"]))


def test_provider_failure_raises_external_service_error():
    failing = AsyncMock(side_effect=RuntimeError("rate limited"))
    with patch("docfuse.rag.llm_client.litellm.aembedding", failing):
        with pytest.raises(ExternalServiceError, match="rate limited"):
            asyncio.run(Vectorizer(_cfg()).embed_batch(["t-0"]))


def test_empty_input_makes_no_calls():
    fake = _fake_aembedding()
    with patch("docfuse.rag.llm_client.litellm.aembedding", fake):
        assert asyncio.run(Vectorizer(_cfg()).embed_batch([])) == []
    fake.assert_not_called()


def test_invalid_batch_size_raises():
    with pytest.raises(ValueError):
        Vectorizer(_cfg(batch_size=0))
