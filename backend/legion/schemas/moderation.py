"""Payloads exchanged with the gateway's permission and moderation routes."""

from __future__ import annotations

from pydantic import BaseModel, Field

from .members import ChannelRead, MemberRead


class RpcResult(BaseModel):
    """Outcome returned by the platform's privileged procedures."""

    success: bool = False
    error: str | None = None


class WriteCheckRequest(BaseModel):
    channel: ChannelRead
    actor_rank: str | None = None


class WriteCheckResult(BaseModel):
    allowed: bool
    notice: str | None = None


class ModerateCheckRequest(BaseModel):
    actor_rank: str | None = None
    target_rank: str | None = None
    target_is_banned: bool = False
    actor_is_target: bool = False


class CourseUploadCheckRequest(BaseModel):
    server_id: str
    actor_rank: str | None = None
    actor_role_key: str | None = None


class CourseUploadCheckResult(BaseModel):
    advisory: bool
    authoritative: bool | None = None


class PermissionCheckResult(BaseModel):
    allowed: bool


class BanRequest(BaseModel):
    target_user_id: str
    reason: str | None = Field(default=None, max_length=500)


class RankChangeRequest(BaseModel):
    target_user_id: str
    new_rank: str


class ServerRoleAssignRequest(BaseModel):
    target_user_id: str
    server_id: str
    role_id: str | None = None


class PromoteHeadRequest(BaseModel):
    target_user_id: str
    server_slug: str | None = None


class MentionSuggestRequest(BaseModel):
    text: str
    caret: int = Field(ge=0)
    members: list[MemberRead] = Field(default_factory=list)


class MentionSuggestResult(BaseModel):
    composing: bool
    term: str | None = None
    start: int | None = None
    candidates: list[MemberRead] = Field(default_factory=list)


class MentionExtractRequest(BaseModel):
    text: str
    members: list[MemberRead] = Field(default_factory=list)


class MentionEntry(BaseModel):
    user_id: str
    username: str
