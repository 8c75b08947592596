"""Ingestion orchestrator — segment → enrich → embed → store, per source.

Status discipline:
- the source moves to ``processing`` before any chunk work,
- to ``completed`` only after every chunk row is stored (the chunk_count
  write is the commit point),
- to ``failed`` with a message on every other exit, including timeouts and
  cancellation. The failure write is retried; a source must not be left in
  ``processing`` once its run has ended.

Stages return an Outcome; the first failed stage stops the run. Only
``run_ingestion`` turns a failed outcome into a ``failed`` source and an
error on the returned report.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import uuid
from dataclasses import dataclass

from docfuse.config import DocfuseConfig
from docfuse.db.models import Chunk, Source
from docfuse.db.repository import Repository
from docfuse.errors import (
    DocfuseError,
    ExternalServiceError,
    IllegalTransitionError,
    Outcome,
    PersistenceError,
    ValidationError,
)
from docfuse.ingest.enricher import EnrichedSegment, Enricher, EnricherConfig
from docfuse.ingest.segmenter import Segment, Segmenter
from docfuse.ingest.vectorizer import Vectorizer, VectorizerConfig
from docfuse.lifecycle import COMPLETED, FAILED, PROCESSING, validate_type_fields
from docfuse.log import get_logger

log = get_logger(__name__)

_FINALIZE_ATTEMPTS = 3
_FINALIZE_BACKOFF_SECONDS = 0.5
_INTERRUPTED_MESSAGE = "Ingestion interrupted before completion"


@dataclass
class IngestionReport:
    """Result of one ``run_ingestion`` call."""

    source_id: str
    status: str
    chunk_count: int = 0
    fallback_count: int = 0
    error: DocfuseError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SourceStatus:
    id: str
    title: str
    status: str
    chunk_count: int
    error_message: str | None


def content_hash(text: str) -> str:
    """SHA-256 of *text*, used to skip re-ingesting identical content."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class IngestionOrchestrator:
    """Drive sources through the ingestion pipeline.

    Store writes run synchronously on the event loop thread. The sqlite3
    connection is bound to that thread and each repository transaction
    completes without an await inside it, so concurrent runs in one process
    never interleave statements. A write can block the loop for up to the
    connection's busy timeout only when another process holds the database's
    write lock; one writing process per database is assumed.

    Args:
        repo: Store handle shared by every run. Writes are transactional, so
            concurrent runs never see each other's partial chunk sets.
        segmenter: Chunking stage.
        enricher: Contextual enrichment stage.
        vectorizer: Embedding stage. Its model must be the store's model.
        max_fallback_ratio: Fail a run whose share of un-enriched chunks is
            above this ratio. None accepts any share.
        run_timeout: Seconds before a run is cancelled and marked failed.
    """

    def __init__(
        self,
        repo: Repository,
        segmenter: Segmenter,
        enricher: Enricher,
        vectorizer: Vectorizer,
        *,
        max_fallback_ratio: float | None = None,
        run_timeout: float | None = None,
    ) -> None:
        self._repo = repo
        self._segmenter = segmenter
        self._enricher = enricher
        self._vectorizer = vectorizer
        self._max_fallback_ratio = max_fallback_ratio
        self._run_timeout = run_timeout

    @classmethod
    def from_config(cls, repo: Repository, cfg: DocfuseConfig) -> IngestionOrchestrator:
        """Build the pipeline stages from a loaded configuration."""
        return cls(
            repo,
            Segmenter(cfg.chunking.target_size, cfg.chunking.overlap, cfg.chunking.min_chunk_length),
            Enricher(EnricherConfig.from_cfg(cfg.enrichment)),
            Vectorizer(VectorizerConfig.from_cfg(cfg.embedding)),
            max_fallback_ratio=cfg.enrichment.max_fallback_ratio,
            run_timeout=cfg.ingestion.run_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Source management
    # ------------------------------------------------------------------

    def create_source(
        self,
        source_type: str,
        title: str,
        *,
        category: str | None = None,
        tags: list[str] | None = None,
        description: str | None = None,
        tenant: str | None = None,
        file_name: str | None = None,
        file_size: int | None = None,
        mime_type: str | None = None,
        url: str | None = None,
        content_hash: str | None = None,
    ) -> SourceStatus:
        """Validate and insert a new source in ``pending``.

        Raises:
            ValidationError: Empty title or inconsistent type-specific fields.
        """
        if not title.strip():
            raise ValidationError("Source title must not be empty")
        validate_type_fields(
            source_type, file_name=file_name, file_size=file_size, mime_type=mime_type, url=url
        )
        source = Source(
            id=str(uuid.uuid4()),
            source_type=source_type,
            title=title.strip(),
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            url=url,
            category=category,
            tags=list(tags or []),
            description=description,
            tenant=tenant,
            content_hash=content_hash,
        )
        self._repo.add_source(source)
        log.info("source_created", source_id=source.id, source_type=source_type)
        return self.get_source_status(source.id)

    def get_source_status(self, source_id: str) -> SourceStatus:
        source = self._repo.get_source(source_id)
        if source is None:
            raise ValidationError(f"Source '{source_id}' not found")
        return SourceStatus(
            id=source.id,
            title=source.title,
            status=source.status,
            chunk_count=source.chunk_count,
            error_message=source.error_message,
        )

    def find_duplicate(self, text_hash: str) -> Source | None:
        """Return a completed source with the same content hash, if any."""
        existing = self._repo.get_source_by_hash(text_hash)
        if existing is not None and existing.status == COMPLETED:
            return existing
        return None

    def delete_source(self, source_id: str) -> bool:
        return self._repo.delete_source(source_id)

    def reset_source(self, source_id: str) -> SourceStatus:
        self._repo.reset_source(source_id)
        log.info("source_reset", source_id=source_id)
        return self.get_source_status(source_id)

    def reconcile_stuck_sources(self) -> list[str]:
        """Mark every source still in ``processing`` as failed. Returns their ids.

        Only safe when no run is active against this store.
        """
        stuck = [s.id for s in self._repo.list_stuck_sources()]
        for source_id in stuck:
            self._repo.update_source_status(source_id, FAILED, error_message=_INTERRUPTED_MESSAGE)
            log.warning("source_reconciled", source_id=source_id)
        return stuck

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run_ingestion(self, source_id: str, raw_text: str) -> IngestionReport:
        """Run the whole pipeline for *source_id* and finalize its status.

        Returns:
            A report; ``report.error`` is set when the source ended ``failed``.

        Raises:
            asyncio.CancelledError: After the source was marked failed.
            ValidationError / IllegalTransitionError: The source is missing or
                not ``pending``; its status is left untouched.
        """
        self._repo.update_source_status(source_id, PROCESSING)
        log.info("ingestion_started", source_id=source_id, chars=len(raw_text))

        try:
            if self._run_timeout is not None:
                report = await asyncio.wait_for(
                    self._pipeline(source_id, raw_text), timeout=self._run_timeout
                )
            else:
                report = await self._pipeline(source_id, raw_text)
        except asyncio.TimeoutError:
            error = ExternalServiceError(f"Ingestion timed out after {self._run_timeout}s")
            await self._finalize_failed(source_id, error.message)
            return IngestionReport(source_id, FAILED, error=error)
        except asyncio.CancelledError:
            await asyncio.shield(self._finalize_failed(source_id, _INTERRUPTED_MESSAGE))
            raise
        except Exception as exc:
            # stage wrappers translate expected errors; this is the last-resort guard
            error = exc if isinstance(exc, DocfuseError) else PersistenceError(str(exc))
            await self._finalize_failed(source_id, error.message)
            return IngestionReport(source_id, FAILED, error=error)

        if report.error is not None:
            await self._finalize_failed(source_id, report.error.message)
            report.status = FAILED
        return report

    async def _pipeline(self, source_id: str, raw_text: str) -> IngestionReport:
        segmented = self._segment(raw_text)
        if not segmented.ok:
            return IngestionReport(source_id, PROCESSING, error=segmented.error)
        segments = segmented.value

        enriched = await self._enrich(segments, raw_text)
        if not enriched.ok:
            return IngestionReport(source_id, PROCESSING, error=enriched.error)
        fallback_count = sum(1 for e in enriched.value if e.degraded)

        embedded = await self._embed(enriched.value)
        if not embedded.ok:
            return IngestionReport(
                source_id, PROCESSING, fallback_count=fallback_count, error=embedded.error
            )

        stored = self._store(source_id, enriched.value, embedded.value)
        if not stored.ok:
            return IngestionReport(
                source_id, PROCESSING, fallback_count=fallback_count, error=stored.error
            )

        log.info(
            "ingestion_completed",
            source_id=source_id,
            chunks=stored.value,
            degraded=fallback_count,
        )
        return IngestionReport(
            source_id, COMPLETED, chunk_count=stored.value, fallback_count=fallback_count
        )

    def _segment(self, raw_text: str) -> Outcome[list[Segment]]:
        if not raw_text.strip():
            return Outcome.failure(ValidationError("Extracted text is empty"))
        segments = self._segmenter.segment(raw_text)
        if not segments:
            return Outcome.failure(
                ValidationError(
                    f"Extracted text is too short to index (no chunk longer than "
                    f"{self._segmenter.min_chunk_length} characters)"
                )
            )
        return Outcome.success(segments)

    async def _enrich(self, segments: list[Segment], raw_text: str) -> Outcome[list[EnrichedSegment]]:
        enriched = await self._enricher.enrich(segments, raw_text)
        if self._max_fallback_ratio is not None:
            degraded = sum(1 for e in enriched if e.degraded)
            ratio = degraded / len(enriched)
            if ratio > self._max_fallback_ratio:
                return Outcome.failure(
                    ExternalServiceError(
                        f"Contextual enrichment failed for {degraded} of {len(enriched)} chunks "
                        f"(allowed ratio {self._max_fallback_ratio:.2f})"
                    )
                )
        return Outcome.success(enriched)

    async def _embed(self, enriched: list[EnrichedSegment]) -> Outcome[list[list[float]]]:
        try:
            vectors = await self._vectorizer.embed_batch([e.content_for_search for e in enriched])
        except ExternalServiceError as exc:
            return Outcome.failure(exc)
        return Outcome.success(vectors)

    def _store(
        self, source_id: str, enriched: list[EnrichedSegment], vectors: list[list[float]]
    ) -> Outcome[int]:
        chunks = [
            Chunk(
                source_id=source_id,
                chunk_index=e.chunk_index,
                content=e.content,
                context=e.context,
                token_count=e.token_count,
                metadata=json.dumps({"char_length": len(e.content), "enriched": not e.degraded}),
                embedding=vector,
            )
            for e, vector in zip(enriched, vectors)
        ]
        try:
            self._repo.add_chunks(chunks)
            self._repo.update_source_status(source_id, COMPLETED, chunk_count=len(chunks))
        except (PersistenceError, ValidationError) as exc:
            return Outcome.failure(exc)
        return Outcome.success(len(chunks))

    async def _finalize_failed(self, source_id: str, message: str) -> None:
        """Mark *source_id* failed, retrying the write with backoff."""
        message = message or "Ingestion failed"
        for attempt in range(1, _FINALIZE_ATTEMPTS + 1):
            try:
                self._repo.update_source_status(source_id, FAILED, error_message=message)
            except PersistenceError as exc:
                log.warning(
                    "finalize_retry", source_id=source_id, attempt=attempt, error=str(exc)
                )
                if attempt == _FINALIZE_ATTEMPTS:
                    log.error("finalize_gave_up", source_id=source_id)
                    raise
                await asyncio.sleep(_FINALIZE_BACKOFF_SECONDS * 2 ** (attempt - 1))
            except (ValidationError, IllegalTransitionError) as exc:
                # deleted or reset while the run was in flight
                log.warning("finalize_skipped", source_id=source_id, error=str(exc))
                return
            else:
                log.warning("ingestion_failed", source_id=source_id, error=message)
                return
