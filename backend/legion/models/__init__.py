"""Enumerations shared across the chat core."""

from .enums import (
    AttachmentKind,
    ConversationKind,
    GlobalRank,
    SUPER_RANKS,
    ViewState,
)

__all__ = [
    "AttachmentKind",
    "ConversationKind",
    "GlobalRank",
    "SUPER_RANKS",
    "ViewState",
]
