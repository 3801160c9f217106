"""Schemas describing servers, channels, members and their roles."""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ServerRoleRead(BaseModel):
    """Server-scoped role assigned to a member through their membership."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    rank: int = Field(default=0, description="Display position inside the server (lower shows first)")
    color: str | None = None
    icon: str | None = None
    role_key: str | None = None


class ChannelRead(BaseModel):
    """Text channel belonging to a server."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    server_id: str
    allowed_writer_roles: list[str] | None = Field(
        default=None, description="Global rank keys allowed to post; empty or missing means everyone"
    )

    @field_validator("allowed_writer_roles")
    @classmethod
    def drop_blank_roles(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return [role for role in (item.strip() for item in value) if role]


class ServerRead(BaseModel):
    """Community a channel lives in."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    slug: str | None = None
    server_type: str | None = None

    @property
    def is_headquarters(self) -> bool:
        return self.slug == "headquarters" or self.server_type == "headquarters"


class ProfileRead(BaseModel):
    """Public profile fields used to render authors and members."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    avatar_url: str | None = None
    global_rank: str | None = None
    is_banned: bool = False


class MemberRead(BaseModel):
    """Server member as listed in the member sidebar and mention picker."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: Annotated[str, Field(min_length=1)]
    avatar_url: str | None = None
    global_rank: str | None = None
    role: ServerRoleRead | None = None


class RankDisplay(BaseModel):
    """Visual appearance of a rank or server role."""

    key: str | None = None
    label: str
    emoji: str
    color: str
