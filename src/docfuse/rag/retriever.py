"""Hybrid retriever: cosine similarity (sqlite-vec) + BM25 (FTS5), weighted fusion.

Candidate widening: a chunk is scored when EITHER its vector similarity is
above the floor OR its lexical index matches the query. Scores are then

    combined = vector_weight * vector_similarity + bm25_weight * text_rank

with text_rank = r / (1 + r), r = -bm25 (FTS5 bm25 is negative, lower is
better), so text_rank is 0 without a lexical match and stays below 1.

Only chunks of ``completed`` sources are ever returned.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from docfuse.config import ConfigError, DocfuseConfig
from docfuse.db.fulltext import build_match_query
from docfuse.db.models import Candidate, SearchFilters
from docfuse.db.repository import Repository
from docfuse.errors import DocfuseError, ValidationError
from docfuse.ingest.vectorizer import Vectorizer
from docfuse.log import get_logger

log = get_logger(__name__)


@dataclass
class RetrieverConfig:
    """Configuration for the hybrid retriever.

    Attributes:
        max_results: Maximum number of chunks returned.
        vector_weight: Weight of cosine similarity in the combined score.
        bm25_weight: Weight of the normalised lexical rank.
        similarity_floor: Vector-only candidates need similarity above this.
        search_language: Analyzer language; must match the indexed language.
        hybrid: False routes query() to the vector-only variant.
    """

    max_results: int = 10
    vector_weight: float = 0.7
    bm25_weight: float = 0.3
    similarity_floor: float = 0.5
    search_language: str = "english"
    hybrid: bool = True

    @classmethod
    def from_cfg(cls, cfg: DocfuseConfig) -> RetrieverConfig:
        r = cfg.retrieval
        return cls(
            max_results=r.max_results,
            vector_weight=r.vector_weight,
            bm25_weight=r.bm25_weight,
            similarity_floor=r.similarity_floor,
            search_language=cfg.search.language,
            hybrid=r.hybrid,
        )


@dataclass
class SearchResult:
    """A ranked chunk with its source attribution and per-signal scores."""

    chunk_id: int
    source_id: str
    source_title: str
    source_type: str
    content: str
    context: str | None
    chunk_index: int
    metadata: dict = field(default_factory=dict)
    vector_similarity: float = 0.0
    text_rank: float = 0.0
    combined_score: float = 0.0


@dataclass
class SearchResponse:
    """Query-time answer. ``message`` explains an empty or degraded result."""

    results: list[SearchResult]
    message: str | None = None


# ------------------------------------------------------------------
# Scoring
# ------------------------------------------------------------------


def normalize_text_rank(bm25: float | None) -> float:
    """Map an FTS5 bm25 value to [0, 1); None (no lexical match) → 0."""
    if bm25 is None:
        return 0.0
    r = max(0.0, -bm25)
    return r / (1.0 + r)


def fuse_scores(
    vector_similarity: float,
    text_rank: float,
    vector_weight: float = 0.7,
    bm25_weight: float = 0.3,
) -> float:
    """Weighted sum of the two signals."""
    return vector_weight * vector_similarity + bm25_weight * text_rank


def _rank_key(result: SearchResult, created_at: str) -> tuple:
    return (-result.combined_score, result.chunk_index, created_at, result.chunk_id)


# ------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------


class RetrievalEngine:
    """Rank chunks for a query against a store handle.

    Args:
        repo: Open repository bound to the deployment's vec table.
        vectorizer: Embeds query text for ``query()``; must use the same model
            as ingestion. Not needed for ``search()`` / ``vector_search()``.
        config: Default weights, floor, language and result limit.
    """

    def __init__(
        self,
        repo: Repository,
        vectorizer: Vectorizer | None = None,
        config: RetrieverConfig | None = None,
    ) -> None:
        self._repo = repo
        self._vectorizer = vectorizer
        self._config = config or RetrieverConfig()

    def search(
        self,
        query_text: str,
        query_embedding: list[float],
        filters: SearchFilters | None = None,
        max_results: int | None = None,
        vector_weight: float | None = None,
        bm25_weight: float | None = None,
        similarity_floor: float | None = None,
        search_language: str | None = None,
    ) -> list[SearchResult]:
        """Hybrid search. Returns results best-first, at most *max_results*.

        Ties on the combined score are broken by ascending chunk_index, then
        source creation time.

        Raises:
            ConfigError: *search_language* differs from the indexed language.
            ValidationError: Negative weights or a non-positive limit.
            PersistenceError: The store query failed.
        """
        cfg = self._config
        limit = cfg.max_results if max_results is None else max_results
        vw = cfg.vector_weight if vector_weight is None else vector_weight
        bw = cfg.bm25_weight if bm25_weight is None else bm25_weight
        floor = cfg.similarity_floor if similarity_floor is None else similarity_floor
        _validate_params(limit, vw, bw)
        self._check_language(search_language or cfg.search_language)

        candidates = self._repo.search_hybrid_candidates(
            query_embedding, build_match_query(query_text), filters, floor
        )
        scored = []
        for cand in candidates:
            text_rank = normalize_text_rank(cand.bm25)
            result = _to_result(cand, text_rank, fuse_scores(cand.vector_similarity, text_rank, vw, bw))
            scored.append((_rank_key(result, cand.source_created_at), result))
        scored.sort(key=lambda pair: pair[0])
        return [result for _, result in scored[:limit]]

    def vector_search(
        self,
        query_embedding: list[float],
        filters: SearchFilters | None = None,
        max_results: int | None = None,
        similarity_floor: float | None = None,
    ) -> list[SearchResult]:
        """Vector-only search for deployments without lexical indexing.

        The combined score equals the vector similarity; text_rank is 0.
        """
        cfg = self._config
        limit = cfg.max_results if max_results is None else max_results
        floor = cfg.similarity_floor if similarity_floor is None else similarity_floor
        _validate_params(limit, 1.0, 0.0)

        candidates = self._repo.search_vector_candidates(query_embedding, filters, floor)
        scored = []
        for cand in candidates:
            result = _to_result(cand, 0.0, cand.vector_similarity)
            scored.append((_rank_key(result, cand.source_created_at), result))
        scored.sort(key=lambda pair: pair[0])
        return [result for _, result in scored[:limit]]

    async def query(
        self,
        query_text: str,
        filters: SearchFilters | None = None,
        max_results: int | None = None,
        vector_only: bool | None = None,
    ) -> SearchResponse:
        """Embed *query_text* and search. Never raises.

        Any failure yields an empty result list with an explanatory message so
        that a query error never aborts the caller's interaction.
        """
        if not query_text.strip():
            return SearchResponse([], "Query is empty.")
        if self._vectorizer is None:
            return SearchResponse([], "Search is unavailable: no embedding model configured.")

        use_vector_only = (not self._config.hybrid) if vector_only is None else vector_only
        try:
            embedding = await self._vectorizer.embed_one(query_text)
            if use_vector_only:
                results = self.vector_search(embedding, filters, max_results)
            else:
                results = self.search(query_text, embedding, filters, max_results)
        except (DocfuseError, ConfigError) as exc:
            log.warning("search_degraded", error=str(exc))
            return SearchResponse([], f"Search is temporarily unavailable: {exc}")
        except Exception as exc:
            log.exception("search_failed", error=str(exc))
            return SearchResponse([], f"Search is temporarily unavailable: {exc}")

        if not results:
            return SearchResponse([], "No matching content found.")
        return SearchResponse(results)

    def _check_language(self, language: str) -> None:
        indexed = self._repo.get_index_setting("search_language")
        if indexed is not None and indexed != language.lower():
            raise ConfigError(
                f"Search language '{language}' does not match the index language '{indexed}'."
            )


def _validate_params(limit: int, vector_weight: float, bm25_weight: float) -> None:
    if limit < 1:
        raise ValidationError(f"max_results must be >= 1, got {limit}")
    if vector_weight < 0 or bm25_weight < 0:
        raise ValidationError(
            f"Weights must be non-negative (vector_weight={vector_weight}, bm25_weight={bm25_weight})"
        )
    if vector_weight + bm25_weight == 0:
        raise ValidationError("vector_weight and bm25_weight must not both be zero")


def _to_result(cand: Candidate, text_rank: float, combined: float) -> SearchResult:
    chunk = cand.chunk
    return SearchResult(
        chunk_id=chunk.id,  # type: ignore[arg-type]
        source_id=chunk.source_id,
        source_title=cand.source_title,
        source_type=cand.source_type,
        content=chunk.content,
        context=chunk.context,
        chunk_index=chunk.chunk_index,
        metadata=json.loads(chunk.metadata),
        vector_similarity=cand.vector_similarity,
        text_rank=text_rank,
        combined_score=combined,
    )
