"""Request body schema for chat turns."""

from datetime import datetime
from typing import Any, List, Literal, Optional, Sequence
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..domain.errors import ChatError
from ..domain.models import Attachment, Message, Role, TextPart, Visibility


class TextPartIn(BaseModel):
    type: Literal["text"]
    text: str = Field(min_length=1, max_length=2000)


class AttachmentIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=2000)
    content_type: Literal["image/png", "image/jpg", "image/jpeg"] = Field(alias="contentType")


class MessageIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: UUID = Field(default_factory=uuid4)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    role: Literal["user"] = "user"
    content: Optional[str] = Field(default=None, max_length=2000)
    parts: List[TextPartIn] = Field(min_length=1)
    experimental_attachments: List[AttachmentIn] = Field(default_factory=list)


class PostRequestBody(BaseModel):
    """Typed turn descriptor."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    message: MessageIn
    selected_chat_model: str = Field(alias="selectedChatModel")
    selected_visibility_type: Visibility = Field(alias="selectedVisibilityType")

    def to_user_message(self) -> Message:
        """The stored form of the submitted message, stamped with server time."""
        return Message(
            id=self.message.id,
            chat_id=self.id,
            role=Role.USER,
            parts=[TextPart(text=part.text) for part in self.message.parts],
            attachments=[
                Attachment(url=a.url, name=a.name, content_type=a.content_type)
                for a in self.message.experimental_attachments
            ],
        )


def parse_post_request(payload: Any, available_models: Sequence[str]) -> PostRequestBody:
    """Validate a raw payload; raises ``bad_request:api`` on any violation."""
    try:
        body = PostRequestBody.model_validate(payload)
    except ValidationError as e:
        raise ChatError("bad_request:api", cause=_describe(e)) from e

    if body.selected_chat_model not in available_models:
        raise ChatError(
            "bad_request:api", cause=f"Unsupported model: {body.selected_chat_model}"
        )
    return body


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
