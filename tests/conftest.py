"""Shared fakes and fixtures for the ragdesk test suite."""

from __future__ import annotations

import asyncio
import fnmatch
from pathlib import Path
from typing import Any, AsyncIterator, Sequence

import pytest

from ragdesk.cache.semantic import cosine_similarity
from ragdesk.embeddings.service import EmbeddingClient, EmbeddingConfig, HashEmbeddings
from ragdesk.errors import DependencyError
from ragdesk.models import VectorMatch, VectorRecord
from ragdesk.persistence import Database
from ragdesk.resilience.breaker import CircuitBreaker, CircuitBreakerConfig
from ragdesk.services.generation import Prompt


class FakeRedis:
    """In-memory stand-in for the async Redis commands ragdesk uses."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: Any) -> bool:
        self.data[key] = str(value)
        return True

    async def setex(self, key: str, seconds: int, value: Any) -> bool:
        self.data[key] = str(value)
        self.ttls[key] = int(seconds)
        return True

    async def incr(self, key: str) -> int:
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        if key not in self.data:
            return False
        self.ttls[key] = int(seconds)
        return True

    async def ttl(self, key: str) -> int:
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    async def keys(self, pattern: str = "*") -> list[str]:
        return [key for key in self.data if fnmatch.fnmatchcase(key, pattern)]

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


class BrokenRedis:
    """Every command fails as if the server were unreachable."""

    def __getattr__(self, name: str):
        async def fail(*args: Any, **kwargs: Any) -> Any:
            raise ConnectionError("redis unavailable")

        return fail


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_: float) -> None:
    return None


def make_breaker(name: str = "test", clock: FakeClock | None = None, **overrides: Any) -> CircuitBreaker:
    config = CircuitBreakerConfig(name=name, **overrides)
    if clock is None:
        return CircuitBreaker(config)
    return CircuitBreaker(config, clock=clock)


def make_embedder(dim: int = 32, breaker: CircuitBreaker | None = None) -> EmbeddingClient:
    config = EmbeddingConfig(dim=dim, batch_size=2, batch_delay_ms=0)
    return EmbeddingClient(HashEmbeddings(dim=dim), breaker or make_breaker("embedding"), config, sleep=no_sleep)


async def make_database(tmp_path: Path) -> Database:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'ragdesk-test.db'}")
    await database.init()
    return database


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def embedder() -> EmbeddingClient:
    return make_embedder()


class InMemoryIndex:
    """Vector index stub with exact cosine search."""

    def __init__(self, *, fail_search: bool = False) -> None:
        self.records: dict[str, VectorRecord] = {}
        self.fail_search = fail_search
        self.breaker = make_breaker("vector-index")

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        for record in records:
            self.records[record.id] = record

    async def search(self, vector: Sequence[float], owner_id: str, k: int = 5) -> Sequence[VectorMatch]:
        if self.fail_search:
            raise DependencyError("vector index down")
        matches = [
            VectorMatch(id=record.id, score=cosine_similarity(vector, record.vector), payload=record.payload)
            for record in self.records.values()
            if record.payload.owner_id == owner_id
        ]
        matches.sort(key=lambda match: match.score, reverse=True)
        return matches[:k]

    async def delete_by_document(self, document_id: str) -> None:
        self.records = {key: r for key, r in self.records.items() if r.payload.document_id != document_id}

    async def delete_by_owner(self, owner_id: str) -> None:
        self.records = {key: r for key, r in self.records.items() if r.payload.owner_id != owner_id}

    async def delete_all(self) -> None:
        self.records = {}

    async def count(self) -> int:
        return len(self.records)


@pytest.fixture
def index() -> InMemoryIndex:
    return InMemoryIndex()


class ScriptedBackend:
    """Streams the given fragments, then optionally stalls or fails."""

    def __init__(self, fragments: list[str], *, error: Exception | None = None, stall: float = 0.0) -> None:
        self.fragments = fragments
        self.error = error
        self.stall = stall
        self.prompts: list[Prompt] = []

    async def complete(self, prompt: Prompt) -> str:
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return "".join(self.fragments)

    async def stream(self, prompt: Prompt) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        for fragment in self.fragments:
            yield fragment
        if self.stall:
            await asyncio.sleep(self.stall)
        if self.error:
            raise self.error
