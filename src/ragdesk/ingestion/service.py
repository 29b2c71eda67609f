"""Document ingestion orchestration for ragdesk."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence
from uuid import UUID, uuid5

from ragdesk.cache.semantic import SemanticCache
from ragdesk.embeddings.service import EmbeddingClient
from ragdesk.embeddings.store import VectorIndex
from ragdesk.errors import EmptyDocumentError, IngestionError
from ragdesk.ingestion.parser import DocumentParser
from ragdesk.ingestion.segmenter import TextSegmenter
from ragdesk.metrics.observability import PipelineMetrics, get_logger
from ragdesk.models import DocumentStatus, TextChunk, VectorPayload, VectorRecord
from ragdesk.persistence.models import Document, DocumentChunk
from ragdesk.persistence.repository import DocumentRepository

_CHUNK_NAMESPACE = UUID("6f1c7a52-2f0e-4d8a-9a57-3f4b0c1d2e9a")


@dataclass(frozen=True)
class IngestionResult:
    document_id: str
    status: DocumentStatus
    chunk_count: int = 0
    error_message: str | None = None


def chunk_uuid(document_id: str, index: int) -> UUID:
    """Stable id for a chunk, so reprocessing a document replaces its vectors."""

    return uuid5(_CHUNK_NAMESPACE, f"{document_id}:{index}")


class IngestionOrchestrator:
    """Drives a document through parse, segment, embed, index and persist.

    A document ends ``COMPLETED`` only when every step succeeded; any failure
    marks it ``FAILED`` with the error message. The uploaded file is removed
    whatever the outcome.
    """

    _logger = get_logger("ingestion")

    def __init__(
        self,
        *,
        parser: DocumentParser,
        segmenter: TextSegmenter,
        embedder: EmbeddingClient,
        index: VectorIndex,
        documents: DocumentRepository,
        cache: SemanticCache | None = None,
    ) -> None:
        self._parser = parser
        self._segmenter = segmenter
        self._embedder = embedder
        self._index = index
        self._documents = documents
        self._cache = cache
        self._tasks: set[asyncio.Task] = set()

    async def upload_and_ingest(
        self,
        *,
        file_path: Path,
        owner_id: str,
        original_name: str,
        media_type: str,
        byte_size: int,
    ) -> Document:
        """Create the document row and start ingestion in the background."""

        document = await self._documents.create(
            owner_id=owner_id,
            original_name=original_name,
            byte_size=byte_size,
            media_type=media_type,
        )
        task = asyncio.create_task(
            self.process(
                document_id=document.id,
                owner_id=owner_id,
                file_path=Path(file_path),
                media_type=media_type,
                filename=original_name,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return document

    def supports(self, media_type: str) -> bool:
        return self._parser.supports(media_type)

    async def wait_idle(self) -> None:
        """Wait for every background ingestion started so far."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def process(
        self,
        *,
        document_id: str,
        owner_id: str,
        file_path: Path,
        media_type: str,
        filename: str,
    ) -> IngestionResult:
        start = time.perf_counter()
        upserted = False
        try:
            self._logger.info("ingestion.parsing", document_id=document_id)
            text = await self._parser.extract_text(file_path, media_type)
            if not text or not text.strip():
                raise EmptyDocumentError("Document contains no extractable text")

            chunks = self._segmenter.segment(text)
            if not chunks:
                raise EmptyDocumentError("No chunks generated from document")

            self._logger.info("ingestion.embedding", document_id=document_id, chunk_count=len(chunks))
            vectors = await self._embedder.embed_batch([chunk.content for chunk in chunks])
            if len(vectors) != len(chunks):
                raise IngestionError(
                    f"Embedding backend returned {len(vectors)} vectors for {len(chunks)} chunks"
                )

            records, rows = self._build_records(document_id, owner_id, filename, chunks, vectors)
            self._logger.info("ingestion.indexing", document_id=document_id, vector_count=len(records))
            await self._index.upsert(records)
            upserted = True
            await self._documents.complete(document_id, rows)
        except Exception as exc:
            duration = time.perf_counter() - start
            message = str(exc) or exc.__class__.__name__
            self._logger.error("ingestion.failed", document_id=document_id, error=message)
            PipelineMetrics.observe_ingestion(duration, 0, DocumentStatus.FAILED.value)
            if upserted:
                await self._discard_vectors(document_id)
            await self._mark_failed(document_id, message)
            return IngestionResult(document_id=document_id, status=DocumentStatus.FAILED, error_message=message)
        finally:
            self._parser.delete_file(file_path)

        duration = time.perf_counter() - start
        PipelineMetrics.observe_ingestion(duration, len(chunks), DocumentStatus.COMPLETED.value)
        self._logger.info(
            "ingestion.complete",
            document_id=document_id,
            chunk_count=len(chunks),
            duration_seconds=duration,
        )
        return IngestionResult(document_id=document_id, status=DocumentStatus.COMPLETED, chunk_count=len(chunks))

    async def delete_document_vectors(self, document_id: str) -> None:
        await self._index.delete_by_document(document_id)

    async def delete_all_vectors_for_owner(self, owner_id: str) -> None:
        await self._index.delete_by_owner(owner_id)
        if self._cache is not None:
            await self._cache.clear_owner(owner_id)

    async def delete_document(self, document_id: str, owner_id: str) -> bool:
        """Remove a document's vectors and its row (chunks cascade)."""

        document = await self._documents.get(document_id, owner_id)
        if document is None:
            return False
        await self._index.delete_by_document(document_id)
        await self._documents.delete(document_id)
        return True

    @staticmethod
    def _build_records(
        document_id: str,
        owner_id: str,
        filename: str,
        chunks: Sequence[TextChunk],
        vectors: Sequence[Sequence[float]],
    ) -> tuple[List[VectorRecord], List[DocumentChunk]]:
        records: List[VectorRecord] = []
        rows: List[DocumentChunk] = []
        for chunk, vector in zip(chunks, vectors):
            vector_id = chunk_uuid(document_id, chunk.index)
            payload = VectorPayload(
                owner_id=owner_id,
                document_id=document_id,
                chunk_id=vector_id.hex,
                content=chunk.content,
                chunk_index=chunk.index,
                filename=filename,
            )
            records.append(VectorRecord(id=str(vector_id), vector=tuple(vector), payload=payload))
            rows.append(
                DocumentChunk(
                    id=vector_id.hex,
                    document_id=document_id,
                    chunk_index=chunk.index,
                    content=chunk.content,
                    start_char=chunk.start_char,
                    end_char=chunk.end_char,
                    vector_id=str(vector_id),
                )
            )
        return records, rows

    async def _discard_vectors(self, document_id: str) -> None:
        try:
            await self._index.delete_by_document(document_id)
        except Exception as exc:
            self._logger.warning("ingestion.vector_cleanup_failed", document_id=document_id, error=str(exc))

    async def _mark_failed(self, document_id: str, message: str) -> None:
        try:
            await self._documents.mark_failed(document_id, message)
        except Exception as exc:
            self._logger.error("ingestion.status_update_failed", document_id=document_id, error=str(exc))
