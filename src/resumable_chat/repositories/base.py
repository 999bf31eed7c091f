"""Base repository interfaces."""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence
from uuid import UUID

from ..domain.models import Chat, Document, Message, StreamHandle, Suggestion, Visibility


class RepositoryError(Exception):
    """Raised when the store cannot complete an operation."""


class ChatAlreadyExistsError(RepositoryError):
    """Raised when a chat id is already bound to an owner."""


class ChatNotFoundError(RepositoryError):
    """Raised when an operation references a chat that does not exist."""


class Repository(ABC):
    """Chat, message and stream-handle store. Each call is atomic."""

    @abstractmethod
    async def get_chat(self, chat_id: UUID) -> Optional[Chat]:
        """Retrieve a chat by ID."""
        pass

    @abstractmethod
    async def create_chat(
        self, chat_id: UUID, user_id: str, title: str, visibility: Visibility
    ) -> Chat:
        """Create a chat; raises ChatAlreadyExistsError if the id is taken."""
        pass

    @abstractmethod
    async def delete_chat(self, chat_id: UUID) -> Chat:
        """Delete a chat together with its messages and stream handles."""
        pass

    @abstractmethod
    async def list_messages(self, chat_id: UUID) -> List[Message]:
        """Messages of a chat in ascending creation order."""
        pass

    @abstractmethod
    async def append_messages(self, messages: Sequence[Message]) -> None:
        """Append messages to their chats."""
        pass

    @abstractmethod
    async def count_messages_by_user(self, user_id: str, window_hours: int) -> int:
        """Count the user's own messages created within the trailing window."""
        pass

    @abstractmethod
    async def create_stream_handle(self, stream_id: UUID, chat_id: UUID) -> StreamHandle:
        """Record a stream id for a chat."""
        pass

    @abstractmethod
    async def list_stream_handles(self, chat_id: UUID) -> List[StreamHandle]:
        """Stream handles of a chat, oldest first."""
        pass


class DocumentRepository(ABC):
    """Store for documents and suggestions written by the tools."""

    @abstractmethod
    async def save_document(self, document: Document) -> Document:
        """Store a new version of a document."""
        pass

    @abstractmethod
    async def get_documents_by_id(self, document_id: UUID) -> List[Document]:
        """All versions of a document, oldest first."""
        pass

    @abstractmethod
    async def save_suggestions(self, suggestions: Sequence[Suggestion]) -> None:
        """Store suggestions."""
        pass

    @abstractmethod
    async def get_suggestions_by_document_id(self, document_id: UUID) -> List[Suggestion]:
        """Suggestions recorded for a document."""
        pass
