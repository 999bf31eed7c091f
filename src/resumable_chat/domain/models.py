"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Visibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class _Part(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TextPart(_Part):
    type: Literal["text"] = "text"
    text: str


class ReasoningPart(_Part):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ToolCallPart(_Part):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(_Part):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    result: Any = None


MessagePart = Annotated[
    Union[TextPart, ReasoningPart, ToolCallPart, ToolResultPart],
    Field(discriminator="type"),
]


class Attachment(BaseModel):
    """Reference to an uploaded file."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    name: str
    content_type: str = Field(alias="contentType")


class Message(BaseModel):
    """One turn's contribution to a chat. Immutable once stored."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID = Field(default_factory=uuid4)
    chat_id: UUID = Field(alias="chatId")
    role: Role
    parts: List[MessagePart] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")

    @property
    def text(self) -> str:
        """Concatenated text parts."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))


class Chat(BaseModel):
    """Conversation thread bound to a single owner."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    user_id: str = Field(alias="userId")
    title: str
    visibility: Visibility = Visibility.PRIVATE
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")


class StreamHandle(BaseModel):
    """Binds a resumable stream id to the chat whose turn produced it."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    chat_id: UUID = Field(alias="chatId")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")


class Session(BaseModel):
    """Resolved caller identity."""

    user_id: str
    email: Optional[str] = None


class DocumentKind(str, Enum):
    TEXT = "text"
    CODE = "code"
    SHEET = "sheet"


class Document(BaseModel):
    """A versioned artifact produced by the document tools."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    user_id: str = Field(alias="userId")
    title: str
    kind: DocumentKind = DocumentKind.TEXT
    content: str = ""
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")


class Suggestion(BaseModel):
    """Writing suggestion attached to a document version."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID = Field(default_factory=uuid4)
    document_id: UUID = Field(alias="documentId")
    document_created_at: datetime = Field(alias="documentCreatedAt")
    user_id: str = Field(alias="userId")
    original_text: str = Field(alias="originalText")
    suggested_text: str = Field(alias="suggestedText")
    description: Optional[str] = None
    is_resolved: bool = Field(default=False, alias="isResolved")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
