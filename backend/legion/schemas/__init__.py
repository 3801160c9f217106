"""Pydantic schemas decoding platform rows and gateway payloads."""

from .members import ChannelRead, MemberRead, ProfileRead, RankDisplay, ServerRead, ServerRoleRead
from .messages import (
    AttachmentRead,
    DirectMessageRead,
    MentionRecord,
    MessageAuthor,
    MessageCreate,
    MessageRead,
    MessageUpdate,
    PinnedMessageRead,
)
from .moderation import RpcResult

__all__ = [
    "AttachmentRead",
    "ChannelRead",
    "DirectMessageRead",
    "MemberRead",
    "MentionRecord",
    "MessageAuthor",
    "MessageCreate",
    "MessageRead",
    "MessageUpdate",
    "PinnedMessageRead",
    "ProfileRead",
    "RankDisplay",
    "RpcResult",
    "ServerRead",
    "ServerRoleRead",
]
