"""Document ingestion pipeline."""

from .parser import DocumentParser
from .segmenter import SegmenterConfig, TextSegmenter, clean_text
from .service import IngestionOrchestrator, IngestionResult, chunk_uuid

__all__ = [
    "DocumentParser",
    "IngestionOrchestrator",
    "IngestionResult",
    "SegmenterConfig",
    "TextSegmenter",
    "chunk_uuid",
    "clean_text",
]
