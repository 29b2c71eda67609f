"""Shared domain models used across the ragdesk pipeline."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStatus(str, enum.Enum):
    """Lifecycle of an uploaded document."""

    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class TextChunk:
    """Contiguous slice of a document's cleaned text."""

    content: str
    index: int
    start_char: int
    end_char: int


@dataclass(frozen=True)
class VectorPayload:
    """Payload stored alongside each vector in the index."""

    owner_id: str
    document_id: str
    chunk_id: str
    content: str
    chunk_index: int
    filename: str = ""

    def to_metadata(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_metadata(cls, metadata: Mapping[str, object], content: str | None = None) -> "VectorPayload":
        return cls(
            owner_id=str(metadata.get("owner_id", "")),
            document_id=str(metadata.get("document_id", "")),
            chunk_id=str(metadata.get("chunk_id", "")),
            content=content if content is not None else str(metadata.get("content", "")),
            chunk_index=int(metadata.get("chunk_index", 0)),
            filename=str(metadata.get("filename", "")),
        )


@dataclass(frozen=True)
class VectorRecord:
    """Vector plus payload, one per chunk."""

    id: str
    vector: Tuple[float, ...]
    payload: VectorPayload


@dataclass(frozen=True)
class VectorMatch:
    """Similarity search hit returned by the vector index."""

    id: str
    score: float
    payload: VectorPayload


@dataclass(frozen=True)
class SourceCitation:
    """Reference back to the chunk that supported an answer."""

    document_id: str
    chunk_id: str
    filename: str
    content: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SourceCitation":
        return cls(
            document_id=str(data.get("document_id", "")),
            chunk_id=str(data.get("chunk_id", "")),
            filename=str(data.get("filename", "")),
            content=str(data.get("content", "")),
            score=float(data.get("score", 0.0)),
        )


@dataclass(frozen=True)
class CacheEntry:
    """Previously generated answer, matched by query-embedding similarity."""

    owner_id: str
    query: str
    answer: str
    sources: Sequence[SourceCitation]
    embedding: Tuple[float, ...]
    created_at: float
    ttl_seconds: int


@dataclass(frozen=True)
class UsageSnapshot:
    """Daily generation usage for one owner."""

    used: int
    limit: int
    remaining: int
    resets_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "resets_at": self.resets_at.isoformat(),
        }


@dataclass(frozen=True)
class QueryResult:
    """Answer produced for a query, with citations."""

    answer: str
    sources: Sequence[SourceCitation]
    cached: bool
    conversation_id: str | None = None
    usage: UsageSnapshot | None = None
    latency_ms: float = 0.0


# Streaming query events. A stream yields Status/Sources/Chunk values and
# terminates with exactly one Complete or Error.


@dataclass(frozen=True)
class Status:
    status: str
    event: str = field(default="status", init=False)


@dataclass(frozen=True)
class Sources:
    sources: Sequence[SourceCitation]
    event: str = field(default="sources", init=False)


@dataclass(frozen=True)
class Chunk:
    text: str
    event: str = field(default="chunk", init=False)


@dataclass(frozen=True)
class Complete:
    answer: str
    sources: Sequence[SourceCitation]
    cached: bool = False
    message_id: str | None = None
    usage: UsageSnapshot | None = None
    event: str = field(default="complete", init=False)


@dataclass(frozen=True)
class Error:
    message: str
    code: str = "QUERY_FAILED"
    usage: UsageSnapshot | None = None
    event: str = field(default="error", init=False)


QueryEvent = Union[Status, Sources, Chunk, Complete, Error]
