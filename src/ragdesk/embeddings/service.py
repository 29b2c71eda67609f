"""Embedding client for ragdesk."""

from __future__ import annotations

import asyncio
import hashlib
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Literal, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings
from langchain_openai import OpenAIEmbeddings

from ragdesk.errors import DependencyError, ServiceUnavailableError
from ragdesk.metrics.observability import get_logger
from ragdesk.resilience.breaker import CircuitBreaker

LOGGER = get_logger("embeddings")

Vector = Tuple[float, ...]


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for the embedding client and its provider."""

    provider: Literal["hash", "openai", "huggingface"] = "hash"
    model: str = "text-embedding-3-small"
    dim: int = 768
    batch_size: int = 5
    batch_delay_ms: int = 300
    normalize: bool = True
    api_key: str | None = None
    device: str | None = None


class HashEmbeddings(LangChainEmbeddings):
    """Deterministic lightweight embeddings used for testing and offline runs."""

    def __init__(self, dim: int = 768) -> None:
        self._dim = dim

    def _hash_to_vector(self, text: str) -> List[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._dim]
        return [byte / 255.0 for byte in raw]

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self._hash_to_vector(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return self._hash_to_vector(text)

    async def aembed_query(self, text: str) -> List[float]:
        return self._hash_to_vector(text)


def build_embedding_provider(config: EmbeddingConfig) -> LangChainEmbeddings:
    if config.provider == "openai":
        return OpenAIEmbeddings(model=config.model, dimensions=config.dim, api_key=config.api_key)
    if config.provider == "huggingface":
        model_kwargs = {"device": config.device} if config.device else {}
        return HuggingFaceEmbeddings(
            model_name=config.model,
            model_kwargs=model_kwargs,
            encode_kwargs={"normalize_embeddings": config.normalize},
        )
    LOGGER.info("embeddings.hash_mode", dim=config.dim)
    return HashEmbeddings(dim=config.dim)


class EmbeddingClient:
    """Turns text into fixed-length vectors through a breaker-protected provider.

    ``embed_batch`` embeds in groups of ``batch_size`` concurrently and pauses
    ``batch_delay_ms`` between groups. Any failure fails the whole batch.
    """

    def __init__(
        self,
        provider: LangChainEmbeddings,
        breaker: CircuitBreaker,
        config: EmbeddingConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._breaker = breaker
        self._config = config or EmbeddingConfig()
        self._sleep = sleep

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def embed(self, text: str) -> Vector:
        try:
            values = await self._breaker.call(self._provider.aembed_query, text)
        except (DependencyError, ServiceUnavailableError):
            raise
        except Exception as exc:
            LOGGER.error("embeddings.failed", error=str(exc))
            raise DependencyError(f"Failed to generate embedding: {exc}") from exc
        if not values:
            raise DependencyError("No embedding returned from provider")
        vector = tuple(float(value) for value in values)
        if len(vector) != self._config.dim:
            LOGGER.warning("embeddings.dim_mismatch", configured=self._config.dim, actual=len(vector))
        return self._normalize(vector)

    async def embed_batch(self, texts: Sequence[str]) -> List[Vector]:
        vectors: List[Vector] = []
        size = max(1, self._config.batch_size)
        for offset in range(0, len(texts), size):
            group = texts[offset : offset + size]
            try:
                vectors.extend(await asyncio.gather(*(self.embed(text) for text in group)))
            except Exception:
                LOGGER.error("embeddings.batch_failed", batch=offset // size, size=len(group))
                raise
            if offset + size < len(texts):
                await self._sleep(self._config.batch_delay_ms / 1000.0)
        if len({len(vector) for vector in vectors}) > 1:
            raise DependencyError("Embedding provider returned vectors of differing length")
        return vectors

    def _normalize(self, vector: Vector) -> Vector:
        if not self._config.normalize:
            return vector
        norm = math.sqrt(sum(value * value for value in vector)) or 1.0
        return tuple(value / norm for value in vector)
