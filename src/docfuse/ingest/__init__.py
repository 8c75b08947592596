"""docfuse ingest pipeline — extraction, segmenter, enricher, vectorizer, orchestrator."""

from docfuse.ingest.enricher import EnrichedSegment, Enricher, EnricherConfig
from docfuse.ingest.orchestrator import IngestionOrchestrator, IngestionReport, SourceStatus
from docfuse.ingest.segmenter import Segment, Segmenter, estimate_tokens, segment
from docfuse.ingest.vectorizer import Vectorizer, VectorizerConfig

__all__ = [
    "EnrichedSegment",
    "Enricher",
    "EnricherConfig",
    "IngestionOrchestrator",
    "IngestionReport",
    "Segment",
    "Segmenter",
    "SourceStatus",
    "Vectorizer",
    "VectorizerConfig",
    "estimate_tokens",
    "segment",
]
