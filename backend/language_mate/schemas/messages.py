"""Domain models for chat messages and their attachments."""

import uuid
from datetime import datetime, timezone
from typing import Annotated, Literal

from pydantic import BaseModel, Field

MessageType = Literal["user", "chat-mate", "editor-mate"]

TEMPORARY_ID_PREFIX = "temp-"


def new_temporary_id() -> str:
    """Local correlation token used until the store assigns a permanent id."""
    return f"{TEMPORARY_ID_PREFIX}{uuid.uuid4().hex}"


def is_temporary_id(message_id: str) -> bool:
    return message_id.startswith(TEMPORARY_ID_PREFIX)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MessageMetadata(BaseModel):
    model: str
    start_time: float  # epoch milliseconds
    end_time: float
    generation_time: float  # milliseconds

    @classmethod
    def measured(cls, model: str, start_time: float, end_time: float) -> "MessageMetadata":
        return cls(
            model=model,
            start_time=start_time,
            end_time=end_time,
            generation_time=end_time - start_time,
        )


class UrlAttachment(BaseModel):
    """An image referenced by a public URL."""

    type: Literal["url"] = "url"
    url: str
    filename: str | None = None


class ImageAttachment(BaseModel):
    """An image uploaded to the local image storage."""

    type: Literal["image"] = "image"
    id: str
    filename: str
    mime_type: str
    size: int
    width: int | None = None
    height: int | None = None


Attachment = Annotated[UrlAttachment | ImageAttachment, Field(discriminator="type")]


class Message(BaseModel):
    id: str
    type: MessageType
    content: str
    reasoning: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    parent_message_id: str | None = None
    is_streaming: bool = False
    metadata: MessageMetadata | None = None
    timestamp: datetime = Field(default_factory=_now)

    @property
    def is_temporary(self) -> bool:
        return is_temporary_id(self.id)


class MessageCreate(BaseModel):
    """Fields the store needs to persist a new message."""

    type: MessageType
    content: str
    reasoning: str | None = None
    parent_message_id: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    metadata: MessageMetadata | None = None


class MessageUpdate(BaseModel):
    content: str | None = None
    reasoning: str | None = None
    metadata: MessageMetadata | None = None


class ConversationInfo(BaseModel):
    id: str
    title: str
    language: str
    model: str = ""
    chat_mate_prompt: str = ""
    editor_mate_prompt: str = ""
    created_at: datetime
    updated_at: datetime
