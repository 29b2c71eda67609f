"""Durable relational store for documents, chunks and conversations."""

from .database import Database
from .models import Base, Conversation, Document, DocumentChunk, Message
from .repository import ConversationRepository, DocumentRepository

__all__ = [
    "Base",
    "Conversation",
    "ConversationRepository",
    "Database",
    "Document",
    "DocumentChunk",
    "DocumentRepository",
    "Message",
]
