from __future__ import annotations

from enum import Enum


class GlobalRank(str, Enum):
    """Platform-wide ranks a profile can hold."""

    THE_HEAD = "the_head"
    APP_DEVELOPER = "app_developer"
    ADMIN = "admin"
    BUSINESS_MASTERY_PROFESSOR = "business_mastery_professor"
    CRYPTO_TRADING_PROFESSOR = "crypto_trading_professor"
    COPYWRITING_PROFESSOR = "copywriting_professor"
    FITNESS_PROFESSOR = "fitness_professor"
    BUSINESS_MENTOR = "business_mentor"
    CRYPTO_TRADING_MENTOR = "crypto_trading_mentor"
    COPYWRITING_MENTOR = "copywriting_mentor"
    COACH = "coach"
    USER = "user"


# Ranks whose appearance and privileges are never overridden by a server role.
SUPER_RANKS: frozenset[str] = frozenset({GlobalRank.THE_HEAD.value, GlobalRank.APP_DEVELOPER.value})


class ConversationKind(str, Enum):
    """Kinds of conversation a view can be attached to."""

    CHANNEL = "channel"
    DIRECT = "direct"


class AttachmentKind(str, Enum):
    """Which foreign key an attachment row carries."""

    MESSAGE = "message"
    DIRECT_MESSAGE = "direct_message"

    @property
    def foreign_key(self) -> str:
        return "message_id" if self is AttachmentKind.MESSAGE else "direct_message_id"


class ViewState(str, Enum):
    """Lifecycle of a conversation view."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
