from __future__ import annotations

from uuid import uuid4

import chromadb
import pytest

from conftest import make_breaker
from ragdesk.embeddings import ChromaVectorIndex
from ragdesk.models import VectorPayload, VectorRecord


def _index() -> ChromaVectorIndex:
    return ChromaVectorIndex(
        make_breaker("vector-index"),
        collection_name=f"test-{uuid4().hex[:12]}",
        client=chromadb.EphemeralClient(),
    )


def _record(owner_id: str, document_id: str, index: int, vector: tuple[float, ...], content: str) -> VectorRecord:
    chunk_id = f"{document_id}-{index}"
    return VectorRecord(
        id=chunk_id,
        vector=vector,
        payload=VectorPayload(
            owner_id=owner_id,
            document_id=document_id,
            chunk_id=chunk_id,
            content=content,
            chunk_index=index,
            filename=f"{document_id}.txt",
        ),
    )


RECORDS = [
    _record("alice", "a1", 0, (1.0, 0.0, 0.0, 0.0), "alpha chunk"),
    _record("alice", "a1", 1, (0.7, 0.7, 0.0, 0.0), "alpha beta chunk"),
    _record("alice", "a2", 0, (0.0, 0.0, 1.0, 0.0), "gamma chunk"),
    _record("bob", "b1", 0, (1.0, 0.0, 0.0, 0.0), "bob's alpha chunk"),
]


@pytest.mark.asyncio
async def test_search_is_scoped_to_owner_and_sorted_by_score():
    index = _index()
    await index.upsert(RECORDS)

    matches = await index.search((1.0, 0.0, 0.0, 0.0), "alice", k=3)

    assert [match.payload.owner_id for match in matches] == ["alice"] * 3
    assert matches[0].id == "a1-0"
    assert matches[0].score == pytest.approx(1.0, abs=1e-4)
    assert [match.score for match in matches] == sorted((match.score for match in matches), reverse=True)
    assert matches[0].payload.content == "alpha chunk"
    assert matches[0].payload.filename == "a1.txt"


@pytest.mark.asyncio
async def test_upsert_replaces_records_with_same_id():
    index = _index()
    await index.upsert(RECORDS[:1])
    replacement = _record("alice", "a1", 0, (1.0, 0.0, 0.0, 0.0), "rewritten chunk")
    await index.upsert([replacement])

    assert await index.count() == 1
    matches = await index.search((1.0, 0.0, 0.0, 0.0), "alice", k=1)
    assert matches[0].payload.content == "rewritten chunk"


@pytest.mark.asyncio
async def test_delete_by_document_and_owner():
    index = _index()
    await index.upsert(RECORDS)

    await index.delete_by_document("a1")
    remaining = await index.search((1.0, 0.0, 0.0, 0.0), "alice", k=1)
    assert {match.payload.document_id for match in remaining} == {"a2"}

    await index.delete_by_owner("alice")
    assert await index.count() == 1
    bob = await index.search((1.0, 0.0, 0.0, 0.0), "bob", k=1)
    assert [match.id for match in bob] == ["b1-0"]


@pytest.mark.asyncio
async def test_delete_all_empties_the_collection():
    index = _index()
    await index.upsert(RECORDS)

    await index.delete_all()

    assert await index.count() == 0


@pytest.mark.asyncio
async def test_search_requires_owner():
    index = _index()
    with pytest.raises(ValueError):
        await index.search((1.0, 0.0, 0.0, 0.0), "", k=1)
