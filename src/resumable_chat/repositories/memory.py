"""In-memory repository implementation."""

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Sequence
from uuid import UUID

import structlog

from ..domain.models import (
    Chat,
    Document,
    Message,
    Role,
    StreamHandle,
    Suggestion,
    Visibility,
    utcnow,
)
from .base import (
    ChatAlreadyExistsError,
    ChatNotFoundError,
    DocumentRepository,
    Repository,
)

logger = structlog.get_logger()


class InMemoryRepository(Repository, DocumentRepository):
    """Async-safe in-memory store for chats, messages, stream handles and documents."""

    def __init__(self) -> None:
        self._chats: Dict[UUID, Chat] = {}
        self._messages: Dict[UUID, List[Message]] = {}
        self._stream_handles: Dict[UUID, List[StreamHandle]] = {}
        self._documents: Dict[UUID, List[Document]] = {}
        self._suggestions: Dict[UUID, List[Suggestion]] = {}
        self._async_lock = asyncio.Lock()
        logger.info("repository_initialized")

    async def get_chat(self, chat_id: UUID) -> Optional[Chat]:
        """Retrieve a chat by ID."""
        async with self._async_lock:
            return self._chats.get(chat_id)

    async def create_chat(
        self, chat_id: UUID, user_id: str, title: str, visibility: Visibility
    ) -> Chat:
        """Create a chat; the id acts as a unique key."""
        async with self._async_lock:
            if chat_id in self._chats:
                raise ChatAlreadyExistsError(f"Chat {chat_id} already exists")

            chat = Chat(id=chat_id, user_id=user_id, title=title, visibility=visibility)
            self._chats[chat_id] = chat
            self._messages[chat_id] = []
            self._stream_handles[chat_id] = []
            logger.info("chat_created", chat_id=str(chat_id), user_id=user_id)
        return chat

    async def delete_chat(self, chat_id: UUID) -> Chat:
        """Delete a chat and everything it owns."""
        async with self._async_lock:
            chat = self._chats.pop(chat_id, None)
            if chat is None:
                raise ChatNotFoundError(f"Chat {chat_id} not found")
            self._messages.pop(chat_id, None)
            self._stream_handles.pop(chat_id, None)
            logger.info("chat_deleted", chat_id=str(chat_id))
            return chat

    async def list_messages(self, chat_id: UUID) -> List[Message]:
        """Messages in ascending creation order; ties keep insertion order."""
        async with self._async_lock:
            messages = self._messages.get(chat_id, [])
            return sorted(messages, key=lambda m: m.created_at)

    async def append_messages(self, messages: Sequence[Message]) -> None:
        """Append messages to their chats."""
        async with self._async_lock:
            for message in messages:
                if message.chat_id not in self._chats:
                    logger.error(
                        "chat_not_found_for_message",
                        chat_id=str(message.chat_id),
                        message_id=str(message.id),
                    )
                    raise ChatNotFoundError(f"Chat {message.chat_id} not found")

            for message in messages:
                self._messages[message.chat_id].append(message)
                logger.info(
                    "message_added",
                    chat_id=str(message.chat_id),
                    message_id=str(message.id),
                    message_role=message.role.value,
                )

    async def count_messages_by_user(self, user_id: str, window_hours: int) -> int:
        """Count user-role messages in the caller's chats within the window."""
        cutoff = utcnow() - timedelta(hours=window_hours)
        async with self._async_lock:
            return sum(
                1
                for chat_id, chat in self._chats.items()
                if chat.user_id == user_id
                for message in self._messages.get(chat_id, [])
                if message.role == Role.USER and message.created_at >= cutoff
            )

    async def create_stream_handle(self, stream_id: UUID, chat_id: UUID) -> StreamHandle:
        """Record a stream id for a chat."""
        async with self._async_lock:
            if chat_id not in self._chats:
                raise ChatNotFoundError(f"Chat {chat_id} not found")
            handle = StreamHandle(id=stream_id, chat_id=chat_id)
            self._stream_handles[chat_id].append(handle)
            return handle

    async def list_stream_handles(self, chat_id: UUID) -> List[StreamHandle]:
        """Stream handles of a chat, oldest first."""
        async with self._async_lock:
            handles = self._stream_handles.get(chat_id, [])
            return sorted(handles, key=lambda h: h.created_at)

    async def save_document(self, document: Document) -> Document:
        """Store a new version of a document."""
        async with self._async_lock:
            self._documents.setdefault(document.id, []).append(document)
            logger.info("document_saved", document_id=str(document.id), kind=document.kind.value)
            return document

    async def get_documents_by_id(self, document_id: UUID) -> List[Document]:
        """All versions of a document, oldest first."""
        async with self._async_lock:
            return sorted(self._documents.get(document_id, []), key=lambda d: d.created_at)

    async def save_suggestions(self, suggestions: Sequence[Suggestion]) -> None:
        """Store suggestions."""
        async with self._async_lock:
            for suggestion in suggestions:
                self._suggestions.setdefault(suggestion.document_id, []).append(suggestion)

    async def get_suggestions_by_document_id(self, document_id: UUID) -> List[Suggestion]:
        """Suggestions recorded for a document."""
        async with self._async_lock:
            return list(self._suggestions.get(document_id, []))
