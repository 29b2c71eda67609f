"""Repositories over the relational store."""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import delete, func, select, update

from ragdesk.metrics.observability import get_logger
from ragdesk.models import DocumentStatus, SourceCitation, utcnow
from ragdesk.persistence.database import Database
from ragdesk.persistence.models import Conversation, Document, DocumentChunk, Message

LOGGER = get_logger("repository")

TITLE_MAX_CHARS = 100


class DocumentRepository:
    """CRUD for documents and their chunk rows. Each call runs in its own session."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(
        self,
        *,
        owner_id: str,
        original_name: str,
        byte_size: int,
        media_type: str,
    ) -> Document:
        async with self._db.sessionmaker() as session:
            document = Document(
                owner_id=owner_id,
                original_name=original_name,
                byte_size=byte_size,
                media_type=media_type,
                status=DocumentStatus.PROCESSING.value,
            )
            session.add(document)
            await session.commit()
            await session.refresh(document)
        LOGGER.info("document.created", document_id=document.id, owner_id=owner_id)
        return document

    async def get(self, document_id: str, owner_id: str | None = None) -> Document | None:
        stmt = select(Document).where(Document.id == document_id)
        if owner_id is not None:
            stmt = stmt.where(Document.owner_id == owner_id)
        async with self._db.sessionmaker() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def list_for_owner(self, owner_id: str, *, offset: int = 0, limit: int = 20) -> tuple[list[Document], int]:
        async with self._db.sessionmaker() as session:
            rows = await session.execute(
                select(Document)
                .where(Document.owner_id == owner_id)
                .order_by(Document.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            total = await session.scalar(select(func.count()).select_from(Document).where(Document.owner_id == owner_id))
        return list(rows.scalars()), int(total or 0)

    async def complete(self, document_id: str, chunks: Sequence[DocumentChunk]) -> None:
        """Swap the document's chunk rows for ``chunks`` and mark it completed.

        Both writes share one transaction, so a document is never left
        failed with chunk rows or completed without them.
        """

        async with self._db.sessionmaker() as session:
            await session.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id))
            session.add_all(list(chunks))
            await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(status=DocumentStatus.COMPLETED.value, chunk_count=len(chunks), error_message=None)
            )
            await session.commit()

    async def count_chunks(self, document_id: str) -> int:
        async with self._db.sessionmaker() as session:
            total = await session.scalar(
                select(func.count()).select_from(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )
        return int(total or 0)

    async def mark_failed(self, document_id: str, message: str) -> None:
        await self._set_status(document_id, DocumentStatus.FAILED, error_message=message)

    async def delete(self, document_id: str) -> None:
        async with self._db.sessionmaker() as session:
            await session.execute(delete(Document).where(Document.id == document_id))
            await session.commit()
        LOGGER.info("document.deleted", document_id=document_id)

    async def _set_status(self, document_id: str, status: DocumentStatus, **values: object) -> None:
        async with self._db.sessionmaker() as session:
            await session.execute(
                update(Document).where(Document.id == document_id).values(status=status.value, **values)
            )
            await session.commit()


class ConversationRepository:
    """Conversations and their messages."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(self, owner_id: str, first_query: str) -> Conversation:
        title = first_query[:TITLE_MAX_CHARS] + ("..." if len(first_query) > TITLE_MAX_CHARS else "")
        async with self._db.sessionmaker() as session:
            conversation = Conversation(owner_id=owner_id, title=title)
            session.add(conversation)
            await session.commit()
            await session.refresh(conversation)
        LOGGER.info("conversation.created", conversation_id=conversation.id, owner_id=owner_id)
        return conversation

    async def get(self, conversation_id: str, owner_id: str) -> Conversation | None:
        async with self._db.sessionmaker() as session:
            result = await session.execute(
                select(Conversation).where(Conversation.id == conversation_id, Conversation.owner_id == owner_id)
            )
            return result.scalar_one_or_none()

    async def messages(self, conversation_id: str) -> list[Message]:
        async with self._db.sessionmaker() as session:
            result = await session.execute(
                select(Message).where(Message.conversation_id == conversation_id).order_by(Message.created_at)
            )
            return list(result.scalars())

    async def record_exchange(
        self,
        conversation_id: str,
        owner_id: str,
        query: str,
        answer: str,
        sources: Sequence[SourceCitation],
    ) -> str | None:
        """Store the user query and assistant answer together.

        Returns the assistant message id, or ``None`` when the conversation
        does not belong to ``owner_id``.
        """

        async with self._db.sessionmaker() as session:
            conversation = (
                await session.execute(
                    select(Conversation).where(Conversation.id == conversation_id, Conversation.owner_id == owner_id)
                )
            ).scalar_one_or_none()
            if conversation is None:
                LOGGER.warning("conversation.not_found", conversation_id=conversation_id, owner_id=owner_id)
                return None
            asked_at = utcnow()
            user_message = Message(conversation_id=conversation_id, role="USER", content=query, created_at=asked_at)
            assistant_message = Message(
                conversation_id=conversation_id,
                role="ASSISTANT",
                content=answer,
                sources=[source.to_dict() for source in sources],
                created_at=utcnow(),
            )
            session.add_all([user_message, assistant_message])
            conversation.updated_at = utcnow()
            await session.commit()
            return assistant_message.id
