"""FastAPI application exposing ragdesk services."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Sequence
from uuid import uuid4

import chromadb
from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ragdesk.api.schemas import (
    BreakerStatsModel,
    CitationModel,
    DocumentListResponse,
    DocumentSummary,
    QueryRequest,
    QueryResponse,
    ReadinessResponse,
    UsageModel,
    VectorDeletionResponse,
)
from ragdesk.cache import SemanticCache, SemanticCacheConfig, UsageLedger, create_redis
from ragdesk.config import Settings, get_settings
from ragdesk.embeddings import ChromaVectorIndex, EmbeddingClient, EmbeddingConfig, VectorIndex, build_embedding_provider
from ragdesk.errors import (
    DependencyError,
    IngestionError,
    ServiceUnavailableError,
    UnsupportedMediaTypeError,
    UsageLimitExceededError,
)
from ragdesk.ingestion import DocumentParser, IngestionOrchestrator, SegmenterConfig, TextSegmenter
from ragdesk.metrics.observability import (
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_correlation_id,
    get_logger,
)
from ragdesk.models import QueryEvent
from ragdesk.persistence import ConversationRepository, Database, DocumentRepository
from ragdesk.resilience import CircuitBreaker, create_circuit_breaker
from ragdesk.services import (
    GenerationClient,
    GenerationConfig,
    QueryConfig,
    QueryOrchestrator,
    build_generation_backend,
)

_UPLOAD_READ_BYTES = 1024 * 1024


@dataclass(frozen=True)
class AppDependencies:
    database: Database
    documents: DocumentRepository
    ingestion: IngestionOrchestrator
    query: QueryOrchestrator
    usage: UsageLedger
    index: VectorIndex
    breakers: Sequence[CircuitBreaker]


def build_dependencies(settings: Settings) -> AppDependencies:
    database = Database(settings.database_url)
    documents = DocumentRepository(database)
    conversations = ConversationRepository(database)
    redis = create_redis(settings.redis_url)

    embedding_config = EmbeddingConfig(
        provider=settings.embedding_provider,
        model=settings.embedding_model,
        dim=settings.embedding_dim,
        batch_size=settings.embedding_batch_size,
        batch_delay_ms=settings.embedding_batch_delay_ms,
        api_key=settings.openai_api_key,
    )
    embedder = EmbeddingClient(
        build_embedding_provider(embedding_config),
        create_circuit_breaker(settings.embedding_breaker),
        embedding_config,
    )

    chroma_client = None
    if settings.chroma_host:
        chroma_client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    index = ChromaVectorIndex(
        create_circuit_breaker(settings.vector_breaker),
        collection_name=settings.chroma_collection,
        client=chroma_client,
        persist_directory=None if chroma_client else settings.chroma_persist_dir,
    )

    cache = SemanticCache(
        redis,
        embedder,
        SemanticCacheConfig(
            ttl_seconds=settings.cache_ttl_seconds,
            similarity_threshold=settings.cache_similarity_threshold,
        ),
    )
    usage = UsageLedger(redis, settings.daily_message_limit)

    generation_config = GenerationConfig(
        provider=settings.generator_provider,
        model=settings.generator_model,
        temperature=settings.generator_temperature,
        max_tokens=settings.generator_max_tokens,
        api_key=settings.openai_api_key,
    )
    generator = GenerationClient(
        build_generation_backend(generation_config),
        create_circuit_breaker(settings.generation_breaker),
    )

    ingestion = IngestionOrchestrator(
        parser=DocumentParser(),
        segmenter=TextSegmenter(
            SegmenterConfig(
                chunk_size=settings.chunk_size,
                chunk_overlap=settings.chunk_overlap,
                min_chunk_chars=settings.min_chunk_chars,
            )
        ),
        embedder=embedder,
        index=index,
        documents=documents,
        cache=cache,
    )
    query = QueryOrchestrator(
        embedder=embedder,
        index=index,
        cache=cache,
        generator=generator,
        usage=usage,
        conversations=conversations,
        config=QueryConfig(top_k=settings.retrieval_top_k, preview_chars=settings.citation_preview_chars),
        own_backend_factory=lambda key: build_generation_backend(generation_config, api_key=key),
    )
    return AppDependencies(
        database=database,
        documents=documents,
        ingestion=ingestion,
        query=query,
        usage=usage,
        index=index,
        breakers=(embedder.breaker, index.breaker, generator.breaker),
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    """Build the application; serve with ``uvicorn --factory ragdesk.api.app:create_app``."""

    settings = settings or get_settings()
    deps = dependencies or build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await deps.database.init()
        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        yield
        await deps.ingestion.wait_idle()
        await deps.database.dispose()

    from ragdesk import __version__

    app = FastAPI(title="ragdesk API", version=__version__, lifespan=lifespan)
    app.state.dependencies = deps

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def _correlation_id(request: Request) -> str:
        return getattr(request.state, "correlation_id", None) or get_correlation_id()

    @app.exception_handler(UsageLimitExceededError)
    async def handle_usage_limit(request: Request, exc: UsageLimitExceededError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": str(exc), "code": exc.code, "usage": exc.usage.to_dict()},
        )

    @app.exception_handler(ServiceUnavailableError)
    async def handle_unavailable(request: Request, exc: ServiceUnavailableError) -> JSONResponse:
        logger.warning("dependency.unavailable", correlation_id=_correlation_id(request), dependency=exc.name)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": str(exc), "code": "SERVICE_UNAVAILABLE"},
        )

    @app.exception_handler(UnsupportedMediaTypeError)
    async def handle_unsupported(request: Request, exc: UnsupportedMediaTypeError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, content={"detail": str(exc)})

    @app.exception_handler(IngestionError)
    async def handle_ingestion_error(request: Request, exc: IngestionError) -> JSONResponse:
        correlation_id = _correlation_id(request)
        logger.error("ingestion.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc), "correlation_id": correlation_id},
        )

    @app.exception_handler(DependencyError)
    async def handle_dependency_error(request: Request, exc: DependencyError) -> JSONResponse:
        correlation_id = _correlation_id(request)
        logger.error("dependency.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": str(exc), "correlation_id": correlation_id},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = _correlation_id(request)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_owner_id(x_user_id: str | None = Header(default=None, alias="X-User-ID")) -> str:
        owner_id = (x_user_id or "").strip()
        if not owner_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
        return owner_id

    def get_provider_key(x_provider_key: str | None = Header(default=None, alias="X-Provider-Key")) -> str | None:
        return (x_provider_key or "").strip() or None

    @app.post("/documents", response_model=DocumentSummary, status_code=status.HTTP_202_ACCEPTED)
    async def upload_document(
        file: UploadFile = File(...),
        owner_id: str = Depends(get_owner_id),
        deps: AppDependencies = Depends(get_dependencies),
    ) -> DocumentSummary:
        filename = file.filename or f"upload-{uuid4().hex}"
        media_type = (file.content_type or "").split(";")[0].strip()
        if media_type not in settings.allowed_media_types_tuple or not deps.ingestion.supports(media_type):
            await file.close()
            raise UnsupportedMediaTypeError(f"Unsupported file type: {media_type or 'unknown'}")

        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        destination = settings.upload_dir / f"{uuid4().hex}{Path(filename).suffix.lower()}"
        limit = settings.max_upload_size_mb * 1024 * 1024
        bytes_written = 0
        with destination.open("wb") as out_f:
            while True:
                chunk = await file.read(_UPLOAD_READ_BYTES)
                if not chunk:
                    break
                bytes_written += len(chunk)
                if bytes_written > limit:
                    break
                out_f.write(chunk)
        await file.close()
        if bytes_written > limit:
            DocumentParser.delete_file(destination)
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File too large (>{settings.max_upload_size_mb}MB): {filename}",
            )
        if bytes_written == 0:
            DocumentParser.delete_file(destination)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"File is empty: {filename}")

        document = await deps.ingestion.upload_and_ingest(
            file_path=destination,
            owner_id=owner_id,
            original_name=filename,
            media_type=media_type,
            byte_size=bytes_written,
        )
        logger.info("document.accepted", document_id=document.id, owner_id=owner_id, media_type=media_type)
        return DocumentSummary.from_record(document)

    @app.get("/documents", response_model=DocumentListResponse)
    async def list_documents(
        offset: int = Query(default=0, ge=0),
        limit: int = Query(default=20, ge=1, le=100),
        owner_id: str = Depends(get_owner_id),
        deps: AppDependencies = Depends(get_dependencies),
    ) -> DocumentListResponse:
        documents, total = await deps.documents.list_for_owner(owner_id, offset=offset, limit=limit)
        return DocumentListResponse(
            documents=[DocumentSummary.from_record(document) for document in documents],
            total=total,
            offset=offset,
            limit=limit,
        )

    @app.get("/documents/{document_id}", response_model=DocumentSummary)
    async def get_document(
        document_id: str,
        owner_id: str = Depends(get_owner_id),
        deps: AppDependencies = Depends(get_dependencies),
    ) -> DocumentSummary:
        document = await deps.documents.get(document_id, owner_id)
        if document is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        return DocumentSummary.from_record(document)

    @app.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_document(
        document_id: str,
        owner_id: str = Depends(get_owner_id),
        deps: AppDependencies = Depends(get_dependencies),
    ) -> Response:
        if not await deps.ingestion.delete_document(document_id, owner_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/vectors/documents/{document_id}", response_model=VectorDeletionResponse)
    async def delete_document_vectors(
        document_id: str,
        owner_id: str = Depends(get_owner_id),
        deps: AppDependencies = Depends(get_dependencies),
    ) -> VectorDeletionResponse:
        if await deps.documents.get(document_id, owner_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        await deps.ingestion.delete_document_vectors(document_id)
        return VectorDeletionResponse(document_id=document_id)

    @app.delete("/vectors", response_model=VectorDeletionResponse)
    async def delete_owner_vectors(
        owner_id: str = Depends(get_owner_id),
        deps: AppDependencies = Depends(get_dependencies),
    ) -> VectorDeletionResponse:
        await deps.ingestion.delete_all_vectors_for_owner(owner_id)
        return VectorDeletionResponse(owner_id=owner_id)

    @app.post("/query", response_model=QueryResponse)
    async def query_documents(
        payload: QueryRequest,
        owner_id: str = Depends(get_owner_id),
        provider_key: str | None = Depends(get_provider_key),
        deps: AppDependencies = Depends(get_dependencies),
    ) -> QueryResponse:
        result = await deps.query.answer(
            payload.query,
            owner_id,
            conversation_id=payload.conversation_id,
            create_conversation=True,
            provider_key=provider_key,
        )
        return QueryResponse(
            answer=result.answer,
            sources=[CitationModel.from_citation(source) for source in result.sources],
            cached=result.cached,
            conversation_id=result.conversation_id,
            usage=UsageModel.from_snapshot(result.usage) if result.usage else None,
            latency_ms=result.latency_ms,
        )

    @app.post("/query/stream")
    async def query_stream(
        payload: QueryRequest,
        owner_id: str = Depends(get_owner_id),
        provider_key: str | None = Depends(get_provider_key),
        deps: AppDependencies = Depends(get_dependencies),
    ) -> StreamingResponse:
        events = deps.query.stream(
            payload.query,
            owner_id,
            conversation_id=payload.conversation_id,
            provider_key=provider_key,
        )

        async def iter_sse() -> AsyncIterator[str]:
            async for event in events:
                yield encode_sse(event)

        return StreamingResponse(
            iter_sse(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/usage", response_model=UsageModel)
    async def get_usage(
        owner_id: str = Depends(get_owner_id),
        deps: AppDependencies = Depends(get_dependencies),
    ) -> UsageModel:
        return UsageModel.from_snapshot(await deps.usage.get_usage(owner_id))

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready", response_model=ReadinessResponse)
    async def readiness(deps: AppDependencies = Depends(get_dependencies)) -> ReadinessResponse:
        breakers = [BreakerStatsModel(**breaker.stats()) for breaker in deps.breakers]
        try:
            vectors = await deps.index.count()
        except Exception as exc:
            return ReadinessResponse(status="error", detail=str(exc), breakers=breakers)
        return ReadinessResponse(status="ready", vectors=vectors, breakers=breakers)

    return app


def _json_default(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_sse(event: QueryEvent) -> str:
    """Render one query event as a server-sent event frame."""

    data = asdict(event)
    name = data.pop("event")
    return f"event: {name}\ndata: {json.dumps(data, default=_json_default)}\n\n"
