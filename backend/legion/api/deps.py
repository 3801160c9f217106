"""FastAPI dependencies for the gateway."""

from __future__ import annotations

from typing import AsyncIterator, Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from legion.config import get_settings
from legion.platform import BackendError, ChatBackend, PlatformClient
from legion.schemas import ProfileRead
from legion.services.auth import InvalidToken, decode_access_token

BackendFactory = Callable[[str], ChatBackend]

bearer_scheme = HTTPBearer(auto_error=False)


def create_platform_backend(token: str) -> ChatBackend:
    return PlatformClient(token, settings=get_settings())


def get_backend_factory() -> BackendFactory:
    """Return the factory building a backend for a user's access token."""

    return create_platform_backend


def get_access_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return credentials.credentials


def get_user_id_from_token(token: str) -> str:
    """Resolve the user id carried by an access token or raise an HTTP 401 error."""

    try:
        payload = decode_access_token(token, get_settings())
    except InvalidToken:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from None
    return str(payload["sub"])


def get_current_user_id(token: str = Depends(get_access_token)) -> str:
    return get_user_id_from_token(token)


async def get_backend(
    token: str = Depends(get_access_token),
    factory: BackendFactory = Depends(get_backend_factory),
) -> AsyncIterator[ChatBackend]:
    """Yield a backend acting on behalf of the caller."""

    backend = factory(token)
    try:
        yield backend
    finally:
        close = getattr(backend, "aclose", None)
        if close is not None:
            await close()


def raise_for_backend_error(exc: BackendError) -> None:
    """Translate a platform failure into an HTTP error."""

    if exc.is_authorization_error:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message) from exc
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message) from exc


async def load_profile(backend: ChatBackend, user_id: str) -> ProfileRead:
    """Fetch a profile or raise HTTP 404."""

    try:
        profiles = await backend.fetch_profiles([user_id])
    except BackendError as exc:
        raise_for_backend_error(exc)
    for profile in profiles:
        if profile.id == user_id:
            return profile
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
