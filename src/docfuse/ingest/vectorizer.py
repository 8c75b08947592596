"""Vectorizer client — ordered, batched, paced embedding requests.

Batches run one after another (never in parallel): provider rate limits apply
per deployment, not per source. Callers see one list in, one list out.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from docfuse.config import EmbeddingCfg
from docfuse.errors import ExternalServiceError
from docfuse.log import get_logger
from docfuse.rag import llm_client

log = get_logger(__name__)


@dataclass
class VectorizerConfig:
    """Embedding settings. ``model`` and ``dimensions`` must match the store's."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 20
    pace_seconds: float = 0.1
    timeout_seconds: float = 60.0
    num_retries: int = 3

    @classmethod
    def from_cfg(cls, cfg: EmbeddingCfg) -> VectorizerConfig:
        return cls(
            model=cfg.model,
            dimensions=cfg.dimensions,
            batch_size=cfg.batch_size,
            pace_seconds=cfg.pace_seconds,
            timeout_seconds=cfg.timeout_seconds,
            num_retries=cfg.num_retries,
        )


class Vectorizer:
    """Embed lists of strings with the deployment's embedding model.

    Args:
        config: Embedding configuration (model, dimensions, batching).
    """

    def __init__(self, config: VectorizerConfig | None = None) -> None:
        self._config = config or VectorizerConfig()
        if self._config.batch_size < 1:
            raise ValueError("batch_size must be >= 1")

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def dimensions(self) -> int:
        return self._config.dimensions

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per text, ``vectors[i]`` for ``texts[i]``.

        Raises:
            ExternalServiceError: A batch failed after retries, or a vector has
                the wrong dimension.
        """
        vectors: list[list[float]] = []
        size = self._config.batch_size
        total = len(texts)

        for offset in range(0, total, size):
            if offset:
                await asyncio.sleep(self._config.pace_seconds)
            batch = texts[offset : offset + size]
            batch_vectors = await llm_client.aembed(
                self._config.model,
                batch,
                num_retries=self._config.num_retries,
                timeout=self._config.timeout_seconds,
            )
            for vector in batch_vectors:
                self._check_dimensions(vector)
            vectors.extend(batch_vectors)
            log.debug("embedding_batch_done", done=len(vectors), total=total)

        return vectors

    async def embed_one(self, text: str) -> list[float]:
        """Embed a single string (used for queries)."""
        return (await self.embed_batch([text]))[0]

    def _check_dimensions(self, vector: list[float]) -> None:
        if len(vector) != self._config.dimensions:
            raise ExternalServiceError(
                f"Embedding model '{self._config.model}' returned a {len(vector)}-dimension "
                f"vector; the index expects {self._config.dimensions}",
                provider=llm_client.provider_of(self._config.model),
            )
