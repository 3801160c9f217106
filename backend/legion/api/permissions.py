"""Advisory permission checks used to gate interface controls."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from legion.config import get_settings
from legion.platform import ChatBackend
from legion.schemas.moderation import (
    CourseUploadCheckRequest,
    CourseUploadCheckResult,
    ModerateCheckRequest,
    PermissionCheckResult,
    WriteCheckRequest,
    WriteCheckResult,
)
from legion.services.permissions import (
    can_moderate,
    can_upload_course_content,
    can_write,
    check_course_upload,
    write_denied_notice,
)

from .deps import get_backend, get_current_user_id

router = APIRouter(prefix="/permissions", tags=["permissions"])


@router.post("/write", response_model=WriteCheckResult)
def check_write(payload: WriteCheckRequest) -> WriteCheckResult:
    allowed = can_write(payload.channel, payload.actor_rank)
    return WriteCheckResult(
        allowed=allowed,
        notice=None if allowed else write_denied_notice(payload.channel),
    )


@router.post("/moderate", response_model=PermissionCheckResult)
def check_moderate(payload: ModerateCheckRequest) -> PermissionCheckResult:
    return PermissionCheckResult(
        allowed=can_moderate(
            payload.actor_rank,
            payload.target_rank,
            payload.target_is_banned,
            payload.actor_is_target,
        )
    )


@router.post("/course-upload", response_model=CourseUploadCheckResult)
async def check_course_upload_permission(
    payload: CourseUploadCheckRequest,
    user_id: str = Depends(get_current_user_id),
    backend: ChatBackend = Depends(get_backend),
) -> CourseUploadCheckResult:
    """Report the local decision alongside the platform's authoritative answer."""

    advisory = can_upload_course_content(
        payload.actor_rank,
        payload.actor_role_key,
        payload.server_id,
        get_settings().professor_role_keys,
    )
    authoritative = await check_course_upload(backend, user_id, payload.server_id)
    return CourseUploadCheckResult(advisory=advisory, authoritative=authoritative)
