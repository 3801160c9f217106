"""Session checks and access token decoding."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import jwt

from legion.config import Settings, get_settings
from legion.platform import BackendError, ChatBackend

logger = logging.getLogger(__name__)


class InvalidToken(Exception):
    """Raised when an access token cannot be validated."""


@dataclass(slots=True)
class AuthDecision:
    """Outcome of a session check."""

    authenticated: bool
    user: dict[str, Any] | None = None
    redirect_to: str | None = None

    @property
    def user_id(self) -> str | None:
        if self.user is None:
            return None
        value = self.user.get("id")
        return str(value) if value is not None else None


def decode_access_token(token: str, settings: Settings | None = None) -> dict[str, Any]:
    """Decode a platform access token, raising :class:`InvalidToken` on failure."""

    settings = settings or get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.platform_jwt_secret,
            algorithms=[settings.platform_jwt_algorithm],
            audience=settings.platform_jwt_audience,
        )
    except jwt.PyJWTError as exc:
        raise InvalidToken("Could not validate credentials") from exc
    if not payload.get("sub"):
        raise InvalidToken("Could not validate credentials")
    return payload


class AuthGuard:
    """Checks the session before a protected page is shown.

    The check never blocks indefinitely: after ``auth_check_timeout_seconds``
    the user is treated as signed out and sent to the sign-in page.
    """

    def __init__(self, backend: ChatBackend, *, settings: Settings | None = None) -> None:
        self.backend = backend
        self.settings = settings or get_settings()

    def _signed_out(self) -> AuthDecision:
        return AuthDecision(authenticated=False, redirect_to=self.settings.sign_in_path)

    async def check(self) -> AuthDecision:
        try:
            user = await asyncio.wait_for(
                self.backend.get_session(), timeout=self.settings.auth_check_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Session check timed out after %.1fs", self.settings.auth_check_timeout_seconds
            )
            return self._signed_out()
        except BackendError:
            logger.warning("Session check failed", exc_info=logger.isEnabledFor(logging.DEBUG))
            return self._signed_out()
        if not user:
            return self._signed_out()
        return AuthDecision(authenticated=True, user=user)
