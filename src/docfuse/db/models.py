"""Domain models for the docfuse database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field


def compose_search_text(context: str | None, content: str) -> str:
    """Return the text that is indexed and embedded for a chunk.

    Mirrors the generated ``chunks.content_for_search`` column.
    """
    if context:
        return f"{context}\n\n{content}"
    return content


@dataclass
class Source:
    id: str
    source_type: str
    title: str
    file_name: str | None = None
    file_size: int | None = None
    mime_type: str | None = None
    url: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    description: str | None = None
    tenant: str | None = None
    status: str = "pending"
    error_message: str | None = None
    chunk_count: int = 0
    content_hash: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Chunk:
    source_id: str
    chunk_index: int
    content: str
    context: str | None = None
    token_count: int = 0
    metadata: str = field(default_factory=lambda: "{}")
    embedding: list[float] | None = None  # only set on the write path
    created_at: str | None = None
    id: int | None = None  # set after insert; None for unsaved chunks

    @property
    def content_for_search(self) -> str:
        return compose_search_text(self.context, self.content)

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)


@dataclass
class SearchFilters:
    """Optional source-level filters applied before scoring."""

    category: str | None = None
    source_type: str | None = None
    tenant: str | None = None


@dataclass
class Candidate:
    """A chunk row returned by the store's candidate queries, before fusion.

    ``bm25`` is FTS5's raw score (negative, lower is better) or None when the
    chunk did not match lexically.
    """

    chunk: Chunk
    source_title: str
    source_type: str
    source_created_at: str
    vector_similarity: float
    bm25: float | None = None
