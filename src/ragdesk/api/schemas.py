"""Pydantic models for the ragdesk API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from ragdesk.models import SourceCitation, UsageSnapshot


class DocumentSummary(BaseModel):
    document_id: str = Field(..., description="Stable identifier for the uploaded document")
    original_name: str = Field(..., description="File name supplied by the uploader")
    media_type: str
    byte_size: int = Field(..., ge=0)
    status: str = Field(..., description="PROCESSING, COMPLETED or FAILED")
    chunk_count: int = Field(..., ge=0, description="Number of chunks created for the document")
    error_message: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_record(cls, document: Any) -> "DocumentSummary":
        return cls(
            document_id=document.id,
            original_name=document.original_name,
            media_type=document.media_type,
            byte_size=document.byte_size,
            status=document.status,
            chunk_count=document.chunk_count,
            error_message=document.error_message,
            created_at=document.created_at,
        )


class DocumentListResponse(BaseModel):
    documents: List[DocumentSummary]
    total: int
    offset: int
    limit: int


class QueryRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000, description="End-user question to answer")
    conversation_id: Optional[str] = Field(default=None, description="Conversation to append this exchange to")


class CitationModel(BaseModel):
    document_id: str
    chunk_id: str
    filename: str
    content: str
    score: float

    @classmethod
    def from_citation(cls, citation: SourceCitation) -> "CitationModel":
        return cls(**citation.to_dict())


class UsageModel(BaseModel):
    used: int
    limit: int
    remaining: int
    resets_at: datetime

    @classmethod
    def from_snapshot(cls, usage: UsageSnapshot) -> "UsageModel":
        return cls(used=usage.used, limit=usage.limit, remaining=usage.remaining, resets_at=usage.resets_at)


class QueryResponse(BaseModel):
    answer: str
    sources: List[CitationModel]
    cached: bool
    conversation_id: Optional[str] = None
    usage: Optional[UsageModel] = None
    latency_ms: float


class VectorDeletionResponse(BaseModel):
    deleted: bool = True
    document_id: Optional[str] = None
    owner_id: Optional[str] = None


class BreakerStatsModel(BaseModel):
    name: str
    state: str
    stats: dict[str, int]


class ReadinessResponse(BaseModel):
    status: str
    vectors: Optional[int] = None
    detail: Optional[str] = None
    breakers: List[BreakerStatsModel]
