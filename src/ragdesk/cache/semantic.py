"""Semantic answer cache keyed by query-embedding similarity."""

from __future__ import annotations

import json
import math
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Sequence

from redis import asyncio as aioredis

from ragdesk.embeddings.service import EmbeddingClient
from ragdesk.metrics.observability import get_logger
from ragdesk.models import CacheEntry, SourceCitation

CACHE_PREFIX = "rag:"
QUERY_CACHE_PREFIX = f"{CACHE_PREFIX}query:"

LOGGER = get_logger("semantic_cache")


@dataclass(frozen=True)
class SemanticCacheConfig:
    ttl_seconds: int = 3600
    similarity_threshold: float = 0.95


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 for mismatched or zero vectors."""

    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    magnitude = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if magnitude == 0:
        return 0.0
    return dot / magnitude


class SemanticCache:
    """Owner-scoped cache of answered queries, matched by vector similarity.

    A lookup scans every live entry of the owner and returns the first whose
    stored query embedding reaches ``similarity_threshold``. Store and
    lookup failures are logged and treated as a miss; they never propagate.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        embedder: EmbeddingClient,
        config: SemanticCacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._embedder = embedder
        self._config = config or SemanticCacheConfig()
        self._clock = clock

    @property
    def config(self) -> SemanticCacheConfig:
        return self._config

    async def lookup(self, query: str, owner_id: str) -> CacheEntry | None:
        try:
            vector = await self._embedder.embed(query)
        except Exception as exc:
            LOGGER.warning("cache.embed_failed", owner_id=owner_id, error=str(exc))
            return None
        return await self.lookup_vector(vector, owner_id)

    async def lookup_vector(self, vector: Sequence[float], owner_id: str) -> CacheEntry | None:
        try:
            keys = await self._redis.keys(self._owner_pattern(owner_id))
            now = self._clock()
            for key in sorted(keys):
                raw = await self._redis.get(key)
                if not raw:
                    continue
                entry = self._decode(raw, owner_id)
                if entry.created_at + entry.ttl_seconds < now:
                    continue
                similarity = cosine_similarity(vector, entry.embedding)
                if similarity >= self._config.similarity_threshold:
                    LOGGER.info("cache.hit", owner_id=owner_id, similarity=round(similarity, 4))
                    return entry
        except Exception as exc:
            LOGGER.warning("cache.lookup_failed", owner_id=owner_id, error=str(exc))
            return None
        LOGGER.debug("cache.miss", owner_id=owner_id, candidates=len(keys))
        return None

    async def store(
        self,
        query: str,
        owner_id: str,
        answer: str,
        sources: Sequence[SourceCitation],
        query_vector: Sequence[float],
    ) -> None:
        created_at = self._clock()
        key = f"{QUERY_CACHE_PREFIX}{owner_id}:{time.time_ns()}-{uuid.uuid4().hex[:8]}"
        data = {
            "query": query,
            "response": answer,
            "sources": [source.to_dict() for source in sources],
            "embedding": list(query_vector),
            "created_at": created_at,
            "ttl": self._config.ttl_seconds,
        }
        try:
            await self._redis.setex(key, self._config.ttl_seconds, json.dumps(data))
            LOGGER.debug("cache.stored", owner_id=owner_id)
        except Exception as exc:
            LOGGER.error("cache.store_failed", owner_id=owner_id, error=str(exc))

    async def clear_owner(self, owner_id: str) -> int:
        try:
            keys = await self._redis.keys(self._owner_pattern(owner_id))
            if keys:
                await self._redis.delete(*keys)
                LOGGER.info("cache.cleared", owner_id=owner_id, count=len(keys))
            return len(keys)
        except Exception as exc:
            LOGGER.error("cache.clear_failed", owner_id=owner_id, error=str(exc))
            return 0

    @staticmethod
    def _owner_pattern(owner_id: str) -> str:
        return f"{QUERY_CACHE_PREFIX}{owner_id}:*"

    def _decode(self, raw: str, owner_id: str) -> CacheEntry:
        data = json.loads(raw)
        return CacheEntry(
            owner_id=owner_id,
            query=str(data.get("query", "")),
            answer=str(data.get("response", "")),
            sources=[SourceCitation.from_dict(item) for item in data.get("sources", [])],
            embedding=tuple(float(value) for value in data.get("embedding", [])),
            created_at=float(data.get("created_at", 0.0)),
            ttl_seconds=int(data.get("ttl", self._config.ttl_seconds)),
        )
