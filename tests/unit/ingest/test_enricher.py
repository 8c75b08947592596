"""Tests for contextual enrichment: ordering, bounded fan-out and fallback."""

from __future__ import annotations

import asyncio
import re
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docfuse.errors import ExternalServiceError
from docfuse.ingest.enricher import Enricher, EnricherConfig, build_excerpt
from docfuse.ingest.segmenter import Segment


def _segments(n: int) -> list[Segment]:
    return [Segment(content=f"chunk body {i}", chunk_index=i, token_count=3) for i in range(n)]


def _index_in(prompt: str) -> int:
    return int(re.search(r"chunk body (\d+)", prompt).group(1))


# ------------------------------------------------------------------
# build_excerpt
# ------------------------------------------------------------------


def test_build_excerpt_short_text_unchanged():
    assert build_excerpt("short doc", 100) == "short doc"


def test_build_excerpt_truncates_with_marker():
    excerpt = build_excerpt("x" * 500, 100)
    assert excerpt.startswith("x" * 100)
    assert "truncated" in excerpt
    assert "x" * 101 not in excerpt


# ------------------------------------------------------------------
# Ordering and concurrency
# ------------------------------------------------------------------


def test_output_order_survives_reversed_completion():
    n = 6

    async def generate(prompt: str) -> str:
        i = _index_in(prompt)
        # later chunks finish first
        await asyncio.sleep(0.01 * (n - i))
        return f"context {i}"

    out = asyncio.run(Enricher(EnricherConfig(concurrency=n), generate).enrich(_segments(n), "doc"))
    assert [e.chunk_index for e in out] == list(range(n))
    assert [e.context for e in out] == [f"context {i}" for i in range(n)]
    assert out[2].content_for_search == "context 2\n\nchunk body 2"


def test_concurrency_limit_is_respected():
    in_flight = 0
    peak = 0

    async def generate(prompt: str) -> str:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return "ctx"

    enricher = Enricher(EnricherConfig(concurrency=10), generate)
    asyncio.run(enricher.enrich(_segments(12), "doc", concurrency_limit=3))
    assert peak == 3


def test_excerpt_is_built_once_and_embedded_in_every_prompt():
    prompts: list[str] = []

    async def generate(prompt: str) -> str:
        prompts.append(prompt)
        return "ctx"

    document = "D" * 50
    enricher = Enricher(EnricherConfig(excerpt_chars=20), generate)
    asyncio.run(enricher.enrich(_segments(3), document))
    assert len(prompts) == 3
    for prompt in prompts:
        assert "D" * 20 in prompt
        assert "D" * 21 not in prompt
        assert "truncated" in prompt


# ------------------------------------------------------------------
# Fallback
# ------------------------------------------------------------------


def test_single_failure_falls_back_for_that_chunk_only():
    async def generate(prompt: str) -> str:
        if _index_in(prompt) == 1:
            raise ExternalServiceError("timeout")
        return "ctx"

    out = asyncio.run(Enricher(generate=generate).enrich(_segments(3), "doc"))
    assert [e.context for e in out] == ["ctx", None, "ctx"]
    assert out[1].degraded
    assert out[1].content_for_search == out[1].content


def test_all_failures_still_return_every_chunk():
    async def generate(prompt: str) -> str:
        raise RuntimeError("provider down")

    out = asyncio.run(Enricher(generate=generate).enrich(_segments(4), "doc"))
    assert len(out) == 4
    for e in out:
        assert e.context is None
        assert e.content_for_search == e.content


def test_blank_response_counts_as_fallback():
    async def generate(prompt: str) -> str:
        return "   "

    [only] = asyncio.run(Enricher(generate=generate).enrich(_segments(1), "doc"))
    assert only.context is None


def test_empty_input_makes_no_calls():
    generate = AsyncMock(return_value="ctx")
    assert asyncio.run(Enricher(generate=generate).enrich([], "doc")) == []
    generate.assert_not_called()


def test_cancellation_is_not_swallowed():
    async def generate(prompt: str) -> str:
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(Enricher(generate=generate).enrich(_segments(2), "doc"))


def test_invalid_concurrency_raises():
    with pytest.raises(ValueError):
        Enricher(EnricherConfig(concurrency=0))


@pytest.mark.parametrize("limit", [0, -2])
def test_invalid_per_call_concurrency_raises(limit):
    generate = AsyncMock(return_value="ctx")
    with pytest.raises(ValueError, match="concurrency_limit"):
        asyncio.run(Enricher(generate=generate).enrich(_segments(2), "doc", concurrency_limit=limit))
    generate.assert_not_called()


# ------------------------------------------------------------------
# Default generator → llm_client
# ------------------------------------------------------------------


def test_default_generate_uses_acompletion():
    response = MagicMock()
    response.choices[0].message.content = "Situated."
    with patch(
        "docfuse.rag.llm_client.litellm.acompletion", new_callable=AsyncMock, return_value=response
    ) as mock_acomp:
        out = asyncio.run(
            Enricher(EnricherConfig(model="openai/gpt-4o-mini", max_tokens=99)).enrich(
                _segments(1), "doc"
            )
        )
    assert out[0].context == "Situated."
    kwargs = mock_acomp.call_args.kwargs
    assert kwargs["model"] == "openai/gpt-4o-mini"
    assert kwargs["max_tokens"] == 99
    assert "chunk body 0" in kwargs["messages"][0]["content"]
