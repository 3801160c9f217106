"""Schemas related to chat messages."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .members import RankDisplay


class MessageAuthor(BaseModel):
    """Lightweight author information for displaying messages."""

    id: str
    username: str = "Unknown"
    avatar_url: str | None = None
    global_rank: str | None = None
    rank: RankDisplay | None = None


class AttachmentRead(BaseModel):
    """Serialized representation of a message or direct-message attachment."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    storage_path: str
    file_name: str
    file_type: str | None = None
    file_size: int = Field(0, ge=0)
    message_id: str | None = None
    direct_message_id: str | None = None
    url: str | None = None

    @model_validator(mode="after")
    def ensure_single_parent(self) -> "AttachmentRead":
        if (self.message_id is None) == (self.direct_message_id is None):
            raise ValueError("Attachment must reference exactly one of message_id or direct_message_id")
        return self


class MessageRead(BaseModel):
    """Channel message as stored by the platform."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    content: str
    user_id: str
    channel_id: str
    created_at: datetime
    edited_at: datetime | None = None
    parent_message_id: str | None = None
    author: MessageAuthor | None = None
    attachments: list[AttachmentRead] = Field(default_factory=list)

    @property
    def author_id(self) -> str:
        return self.user_id


class DirectMessageRead(BaseModel):
    """Direct message exchanged between two friends."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    content: str
    sender_id: str
    receiver_id: str
    created_at: datetime
    edited_at: datetime | None = None
    parent_message_id: str | None = None
    read: bool = False
    author: MessageAuthor | None = None
    attachments: list[AttachmentRead] = Field(default_factory=list)

    @property
    def author_id(self) -> str:
        return self.sender_id


class PinnedMessageRead(BaseModel):
    """Pin record linking a message to the channel it is pinned in."""

    message_id: str
    channel_id: str
    server_id: str
    pinned_by: str
    pinned_at: datetime
    message: MessageRead | None = None


class MentionRecord(BaseModel):
    """Side-effect row written when a sent message mentions a member."""

    mentioned_user_id: str
    mentioning_user_id: str
    message_id: str


class MessageCreate(BaseModel):
    """Compose-box payload validated before anything is sent."""

    content: str = ""
    parent_message_id: str | None = None
    has_attachments: bool = Field(default=False, exclude=True)
    max_length: int = Field(default=2000, exclude=True)

    @field_validator("content")
    @classmethod
    def strip_content(cls, value: str) -> str:
        return value.strip()

    @model_validator(mode="after")
    def check_content(self) -> "MessageCreate":
        if not self.content and not self.has_attachments:
            raise ValueError("Message cannot be empty")
        if len(self.content) > self.max_length:
            raise ValueError(f"Message cannot exceed {self.max_length} characters")
        return self


class MessageUpdate(BaseModel):
    """Payload for editing the content of an existing message."""

    content: str
    max_length: int = Field(default=2000, exclude=True)

    @field_validator("content")
    @classmethod
    def strip_content(cls, value: str) -> str:
        return value.strip()

    @model_validator(mode="after")
    def check_content(self) -> "MessageUpdate":
        if not self.content:
            raise ValueError("Message cannot be empty")
        if len(self.content) > self.max_length:
            raise ValueError(f"Message cannot exceed {self.max_length} characters")
        return self
