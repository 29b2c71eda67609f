"""Query orchestration combining the semantic cache, retrieval and generation."""

from __future__ import annotations

import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Sequence

from ragdesk.cache.semantic import SemanticCache
from ragdesk.cache.usage import UsageLedger
from ragdesk.embeddings.service import EmbeddingClient
from ragdesk.embeddings.store import VectorIndex
from ragdesk.errors import ServiceUnavailableError, UsageLimitExceededError
from ragdesk.metrics.observability import PipelineMetrics, get_logger
from ragdesk.models import (
    Chunk,
    Complete,
    Error,
    QueryEvent,
    QueryResult,
    SourceCitation,
    Sources,
    Status,
    UsageSnapshot,
    VectorMatch,
)
from ragdesk.persistence.repository import ConversationRepository
from ragdesk.services.generation import (
    GenerationBackend,
    GenerationClient,
    StreamCompleted,
    StreamFailed,
    TextFragment,
)

NO_RESULTS_ANSWER = (
    "I couldn't find any relevant information in your documents. "
    "Please upload some documents first or try a different question."
)


@dataclass(frozen=True)
class QueryConfig:
    """Configuration for query handling."""

    top_k: int = 5
    preview_chars: int = 200


def build_citations(matches: Sequence[VectorMatch], preview_chars: int = 200) -> List[SourceCitation]:
    citations: List[SourceCitation] = []
    for match in matches:
        content = match.payload.content
        preview = content[:preview_chars] + ("..." if len(content) > preview_chars else "")
        citations.append(
            SourceCitation(
                document_id=match.payload.document_id,
                chunk_id=match.payload.chunk_id,
                filename=match.payload.filename,
                content=preview,
                score=match.score,
            )
        )
    return citations


class QueryOrchestrator:
    """Answers one query for one owner.

    Order of work: embed the query, consult the semantic cache (hits are
    free and skip everything else), check the daily allowance, search the
    owner's vectors, generate, then write the cache entry, count the usage
    and record the conversation. Nothing is cached, counted or recorded
    when generation fails.
    """

    def __init__(
        self,
        *,
        embedder: EmbeddingClient,
        index: VectorIndex,
        cache: SemanticCache,
        generator: GenerationClient,
        usage: UsageLedger,
        conversations: ConversationRepository | None = None,
        config: QueryConfig | None = None,
        own_backend_factory: Callable[[str], GenerationBackend] | None = None,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._cache = cache
        self._generator = generator
        self._usage = usage
        self._conversations = conversations
        self._config = config or QueryConfig()
        self._own_backend_factory = own_backend_factory
        self._logger = get_logger("query")

    async def answer(
        self,
        query: str,
        owner_id: str,
        *,
        conversation_id: str | None = None,
        create_conversation: bool = False,
        provider_key: str | None = None,
    ) -> QueryResult:
        start = time.perf_counter()
        vector = await self._embedder.embed(query)
        cached = await self._cache.lookup_vector(vector, owner_id)
        if cached is not None:
            PipelineMetrics.observe_query(cached=True)
            conversation_id, _ = await self._record(
                conversation_id, create_conversation, owner_id, query, cached.answer, cached.sources
            )
            return QueryResult(
                answer=cached.answer,
                sources=list(cached.sources),
                cached=True,
                conversation_id=conversation_id,
                latency_ms=(time.perf_counter() - start) * 1000,
            )
        PipelineMetrics.observe_query(cached=False)

        own_credential = bool(provider_key)
        usage = await self._usage.check(owner_id, own_credential=own_credential)
        matches = await self._retrieve(vector, owner_id)
        if not matches:
            text, sources = NO_RESULTS_ANSWER, []
        else:
            sources = build_citations(matches, self._config.preview_chars)
            passages = [match.payload.content for match in matches]
            text = await self._generator_for(provider_key).generate(query, passages)
            if not own_credential:
                usage = await self._usage.increment(owner_id)
        await self._cache.store(query, owner_id, text, sources, vector)
        conversation_id, _ = await self._record(conversation_id, create_conversation, owner_id, query, text, sources)
        latency_ms = (time.perf_counter() - start) * 1000
        self._logger.info("query.answered", owner_id=owner_id, source_count=len(sources), latency_ms=latency_ms)
        return QueryResult(
            answer=text,
            sources=sources,
            cached=False,
            conversation_id=conversation_id,
            usage=usage,
            latency_ms=latency_ms,
        )

    async def stream(
        self,
        query: str,
        owner_id: str,
        *,
        conversation_id: str | None = None,
        provider_key: str | None = None,
    ) -> AsyncIterator[QueryEvent]:
        """Yield status, sources and chunk events, ending in one complete or error event."""

        try:
            yield Status("searching")
            vector = await self._embedder.embed(query)
            cached = await self._cache.lookup_vector(vector, owner_id)
            if cached is not None:
                PipelineMetrics.observe_query(cached=True)
                yield Sources(list(cached.sources))
                yield Complete(answer=cached.answer, sources=list(cached.sources), cached=True)
                return
            PipelineMetrics.observe_query(cached=False)

            own_credential = bool(provider_key)
            try:
                await self._usage.check(owner_id, own_credential=own_credential)
            except UsageLimitExceededError as exc:
                yield Error(str(exc), code=exc.code, usage=exc.usage)
                return

            matches = await self._retrieve(vector, owner_id)
            if not matches:
                await self._cache.store(query, owner_id, NO_RESULTS_ANSWER, [], vector)
                _, message_id = await self._record(conversation_id, False, owner_id, query, NO_RESULTS_ANSWER, [])
                yield Sources([])
                yield Complete(answer=NO_RESULTS_ANSWER, sources=[], message_id=message_id)
                return

            sources = build_citations(matches, self._config.preview_chars)
            passages = [match.payload.content for match in matches]
            yield Status("generating")
            yield Sources(sources)

            answer: str | None = None
            generator = self._generator_for(provider_key)
            async with aclosing(generator.stream(query, passages)) as events:
                async for event in events:
                    if isinstance(event, TextFragment):
                        yield Chunk(event.text)
                    elif isinstance(event, StreamFailed):
                        yield self._stream_error(event.error)
                        return
                    elif isinstance(event, StreamCompleted):
                        answer = event.text

            await self._cache.store(query, owner_id, answer or "", sources, vector)
            _, message_id = await self._record(conversation_id, False, owner_id, query, answer or "", sources)
            usage: UsageSnapshot | None = None
            if not own_credential:
                usage = await self._usage.increment(owner_id)
            yield Complete(answer=answer or "", sources=sources, message_id=message_id, usage=usage)
        except ServiceUnavailableError as exc:
            self._logger.warning("query.unavailable", owner_id=owner_id, dependency=exc.name)
            yield Error(str(exc), code="SERVICE_UNAVAILABLE")
        except Exception as exc:
            self._logger.error("query.stream_failed", owner_id=owner_id, error=str(exc))
            yield Error("Query processing failed")

    def _generator_for(self, provider_key: str | None) -> GenerationClient:
        if provider_key and self._own_backend_factory is not None:
            return self._generator.with_backend(self._own_backend_factory(provider_key))
        return self._generator

    async def _retrieve(self, vector: Sequence[float], owner_id: str) -> Sequence[VectorMatch]:
        start = time.perf_counter()
        matches = await self._index.search(vector, owner_id, self._config.top_k)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(matches), (match.score for match in matches))
        self._logger.info(
            "retrieval.complete",
            owner_id=owner_id,
            chunk_count=len(matches),
            duration_seconds=duration,
        )
        return matches

    def _stream_error(self, error: Exception) -> Error:
        if isinstance(error, ServiceUnavailableError):
            return Error(str(error), code="SERVICE_UNAVAILABLE")
        return Error("Failed to generate response", code="GENERATION_FAILED")

    async def _record(
        self,
        conversation_id: str | None,
        create: bool,
        owner_id: str,
        query: str,
        answer: str,
        sources: Sequence[SourceCitation],
    ) -> tuple[str | None, str | None]:
        """Write the user/assistant message pair. Failures are logged, not raised."""

        if self._conversations is None or (conversation_id is None and not create):
            return conversation_id, None
        try:
            if conversation_id is None:
                conversation_id = (await self._conversations.create(owner_id, query)).id
            message_id = await self._conversations.record_exchange(conversation_id, owner_id, query, answer, sources)
        except Exception as exc:
            self._logger.error("conversation.save_failed", conversation_id=conversation_id, error=str(exc))
            return conversation_id, None
        return conversation_id, message_id
