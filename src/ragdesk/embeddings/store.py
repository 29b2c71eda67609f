"""Vector index client backed by a Chroma collection."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI

from ragdesk.errors import DependencyError, ServiceUnavailableError
from ragdesk.metrics.observability import get_logger
from ragdesk.models import VectorMatch, VectorPayload, VectorRecord
from ragdesk.resilience.breaker import CircuitBreaker

LOGGER = get_logger("vector_index")


class VectorIndex(Protocol):
    """Operations the pipeline needs from a vector store."""

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        """Insert or replace records by id."""

    async def search(self, vector: Sequence[float], owner_id: str, k: int = 5) -> Sequence[VectorMatch]:
        """Return the ``k`` nearest records belonging to ``owner_id``."""

    async def delete_by_document(self, document_id: str) -> None:
        """Remove all records of one document."""

    async def delete_by_owner(self, owner_id: str) -> None:
        """Remove all records of one owner."""

    async def delete_all(self) -> None:
        """Remove every record in the collection."""

    async def count(self) -> int:
        """Return the number of stored records."""


class ChromaVectorIndex:
    """Cosine-distance Chroma collection scoped by owner and document ids.

    Chroma's client is synchronous, so every operation runs in a worker
    thread and goes through the vector-index circuit breaker.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        collection_name: str = "rag-documents",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection_name = collection_name
        self._collection = self._open_collection()
        self._breaker = breaker

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def collection_name(self) -> str:
        return self._collection_name

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        if not records:
            return
        await self._run("upsert", self._upsert_sync, list(records))
        LOGGER.info("vector_index.upserted", count=len(records), dim=len(records[0].vector))

    async def search(self, vector: Sequence[float], owner_id: str, k: int = 5) -> Sequence[VectorMatch]:
        if not owner_id:
            raise ValueError("owner_id is required for vector search")
        if k <= 0:
            return []
        return await self._run("search", self._search_sync, list(vector), owner_id, k)

    async def delete_by_document(self, document_id: str) -> None:
        await self._run("delete_by_document", self._delete_where, {"document_id": document_id})
        LOGGER.info("vector_index.deleted", document_id=document_id)

    async def delete_by_owner(self, owner_id: str) -> None:
        await self._run("delete_by_owner", self._delete_where, {"owner_id": owner_id})
        LOGGER.info("vector_index.deleted", owner_id=owner_id)

    async def delete_all(self) -> None:
        await self._run("delete_all", self._recreate_sync)
        LOGGER.info("vector_index.cleared", collection=self._collection_name)

    async def count(self) -> int:
        return await self._run("count", lambda: int(self._collection.count()))

    def recreate(self) -> None:
        """Drop and recreate the collection (admin use, bypasses the breaker)."""

        self._recreate_sync()

    async def _run(self, operation: str, fn, *args: Any) -> Any:
        async def invoke() -> Any:
            return await asyncio.to_thread(fn, *args)

        try:
            return await self._breaker.call(invoke)
        except (DependencyError, ServiceUnavailableError):
            raise
        except Exception as exc:
            LOGGER.error("vector_index.failed", operation=operation, error=str(exc))
            raise DependencyError(f"Vector index {operation} failed: {exc}") from exc

    def _open_collection(self):
        return self._client.get_or_create_collection(
            name=self._collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def _recreate_sync(self) -> None:
        try:
            self._client.delete_collection(self._collection_name)
        except Exception:  # noqa: BLE001 - collection may not exist yet
            LOGGER.debug("vector_index.no_collection", collection=self._collection_name)
        self._collection = self._open_collection()

    def _upsert_sync(self, records: List[VectorRecord]) -> None:
        self._collection.upsert(
            ids=[record.id for record in records],
            embeddings=[list(record.vector) for record in records],
            documents=[record.payload.content for record in records],
            metadatas=[self._serialize_payload(record.payload) for record in records],
        )

    def _search_sync(self, vector: List[float], owner_id: str, k: int) -> List[VectorMatch]:
        results = self._collection.query(
            query_embeddings=[vector],
            n_results=k,
            where={"owner_id": owner_id},
            include=["documents", "metadatas", "distances"],
        )
        return self._deserialize_results(results)

    def _delete_where(self, where: Mapping[str, str]) -> None:
        self._collection.delete(where=dict(where))

    @staticmethod
    def _serialize_payload(payload: VectorPayload) -> dict[str, object]:
        metadata = payload.to_metadata()
        # content travels as the Chroma document
        metadata.pop("content", None)
        return metadata

    def _deserialize_results(self, results: Mapping[str, object]) -> List[VectorMatch]:
        ids = self._first(results.get("ids", []))
        documents = self._first(results.get("documents", []))
        metadatas = self._first(results.get("metadatas", []))
        distances = self._first(results.get("distances", []))
        matches: List[VectorMatch] = []
        for idx, document, metadata, distance in zip(ids, documents, metadatas, distances, strict=False):
            payload = VectorPayload.from_metadata(metadata or {}, content=document or "")
            matches.append(VectorMatch(id=str(idx), score=1.0 - float(distance), payload=payload))
        matches.sort(key=lambda match: match.score, reverse=True)
        return matches

    @staticmethod
    def _first(value: object) -> Iterable:
        if isinstance(value, list):
            return value[0] if value else []
        return []
