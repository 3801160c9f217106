"""Session check and persisted preference endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials

from legion.config import get_settings
from legion.schemas.session import PreferencesRead, PreferencesUpdate, SessionStatus
from legion.services.auth import AuthDecision, AuthGuard
from legion.services.preferences import PreferenceStore

from .deps import BackendFactory, bearer_scheme, get_backend_factory, get_current_user_id

router = APIRouter(tags=["session"])


def get_preference_store() -> PreferenceStore:
    return PreferenceStore(settings=get_settings())


@router.get("/session", response_model=SessionStatus)
async def read_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    factory: BackendFactory = Depends(get_backend_factory),
) -> SessionStatus:
    """Report whether the caller is signed in, or where to send them if not."""

    settings = get_settings()
    if credentials is None or not credentials.credentials:
        decision = AuthDecision(authenticated=False, redirect_to=settings.sign_in_path)
    else:
        backend = factory(credentials.credentials)
        try:
            decision = await AuthGuard(backend, settings=settings).check()
        finally:
            close = getattr(backend, "aclose", None)
            if close is not None:
                await close()
    return SessionStatus(
        authenticated=decision.authenticated,
        user_id=decision.user_id,
        redirect_to=decision.redirect_to,
    )


@router.get("/preferences", response_model=PreferencesRead)
def read_preferences(
    user_id: str = Depends(get_current_user_id),
    store: PreferenceStore = Depends(get_preference_store),
) -> PreferencesRead:
    return PreferencesRead(show_member_list=store.show_member_list(user_id))


@router.put("/preferences", response_model=PreferencesRead)
def update_preferences(
    payload: PreferencesUpdate,
    user_id: str = Depends(get_current_user_id),
    store: PreferenceStore = Depends(get_preference_store),
) -> PreferencesRead:
    store.set_show_member_list(user_id, payload.show_member_list)
    return PreferencesRead(show_member_list=store.show_member_list(user_id))
