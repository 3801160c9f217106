"""Session status and persisted per-user UI preferences."""

from __future__ import annotations

from pydantic import BaseModel


class SessionStatus(BaseModel):
    authenticated: bool
    user_id: str | None = None
    redirect_to: str | None = None


class PreferencesRead(BaseModel):
    show_member_list: bool = True


class PreferencesUpdate(BaseModel):
    show_member_list: bool
