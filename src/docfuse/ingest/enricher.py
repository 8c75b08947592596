"""Contextual enrichment — a short situating summary per chunk.

For each chunk the text-generation model sees a bounded excerpt of the whole
document plus the chunk, and answers with one or two sentences that place the
chunk in the document. The summary is prepended to the chunk to build the
text that is indexed and embedded; the chunk itself is stored unchanged.

Requests fan out through a semaphore and land in an index-addressed slot per
chunk, so completion order never leaks into the output.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from docfuse.config import EnrichmentCfg
from docfuse.db.models import compose_search_text
from docfuse.ingest.segmenter import Segment
from docfuse.log import get_logger
from docfuse.rag import llm_client

log = get_logger(__name__)

_TRUNCATION_MARKER = "\n\n[... document truncated ...]"

_CONTEXT_PROMPT = """\
<document>
{excerpt}
</document>

Here is a chunk from the document above:
<chunk>
{chunk}
</chunk>

Write a short context (one or two sentences) that situates this chunk within \
the overall document, to improve search retrieval of the chunk. \
Answer only with the context and nothing else."""

Generate = Callable[[str], Awaitable[str]]


@dataclass
class EnricherConfig:
    model: str = "openai/gpt-4o-mini"
    concurrency: int = 5
    excerpt_chars: int = 8_000
    max_tokens: int = 150
    timeout_seconds: float = 60.0
    num_retries: int = 3

    @classmethod
    def from_cfg(cls, cfg: EnrichmentCfg) -> EnricherConfig:
        return cls(
            model=cfg.model,
            concurrency=cfg.concurrency,
            excerpt_chars=cfg.excerpt_chars,
            max_tokens=cfg.max_tokens,
            timeout_seconds=cfg.timeout_seconds,
            num_retries=cfg.num_retries,
        )


@dataclass(frozen=True)
class EnrichedSegment:
    content: str
    chunk_index: int
    token_count: int
    context: str | None
    content_for_search: str

    @property
    def degraded(self) -> bool:
        return self.context is None


def build_excerpt(full_text: str, limit: int) -> str:
    """Return *full_text* cut to *limit* characters, marked when cut."""
    if len(full_text) <= limit:
        return full_text
    return full_text[:limit] + _TRUNCATION_MARKER


class Enricher:
    """Attach LLM-generated context to segments with bounded concurrency.

    Args:
        config: Model and concurrency settings.
        generate: Optional prompt → text coroutine; defaults to
            ``llm_client.acomplete`` with *config*'s model. Injected in tests.
    """

    def __init__(self, config: EnricherConfig | None = None, generate: Generate | None = None) -> None:
        self._config = config or EnricherConfig()
        if self._config.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._generate = generate or self._complete

    async def enrich(
        self,
        segments: list[Segment],
        full_text: str,
        concurrency_limit: int | None = None,
    ) -> list[EnrichedSegment]:
        """Return one EnrichedSegment per input, in input order.

        A failed request never aborts the batch: that segment gets
        ``context=None`` and ``content_for_search == content``.
        """
        limit = self._config.concurrency if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {limit}")
        if not segments:
            return []

        semaphore = asyncio.Semaphore(limit)
        excerpt = build_excerpt(full_text, self._config.excerpt_chars)
        slots: list[EnrichedSegment | None] = [None] * len(segments)

        async def _run(slot: int, seg: Segment) -> None:
            async with semaphore:
                context = await self._context_for(seg, excerpt)
            slots[slot] = EnrichedSegment(
                content=seg.content,
                chunk_index=seg.chunk_index,
                token_count=seg.token_count,
                context=context,
                content_for_search=compose_search_text(context, seg.content),
            )

        await asyncio.gather(*(_run(i, seg) for i, seg in enumerate(segments)))

        enriched = [s for s in slots if s is not None]
        degraded = sum(1 for s in enriched if s.degraded)
        log.info("enrichment_done", chunks=len(enriched), degraded=degraded)
        return enriched

    async def _context_for(self, seg: Segment, excerpt: str) -> str | None:
        prompt = _CONTEXT_PROMPT.format(excerpt=excerpt, chunk=seg.content)
        try:
            text = await self._generate(prompt)
        except Exception as exc:
            log.warning("enrichment_fallback", chunk_index=seg.chunk_index, error=str(exc))
            return None
        text = (text or "").strip()
        if not text:
            log.warning("enrichment_fallback", chunk_index=seg.chunk_index, error="empty response")
            return None
        return text

    async def _complete(self, prompt: str) -> str:
        return await llm_client.acomplete(
            self._config.model,
            [{"role": "user", "content": prompt}],
            max_tokens=self._config.max_tokens,
            num_retries=self._config.num_retries,
            timeout=self._config.timeout_seconds,
        )
