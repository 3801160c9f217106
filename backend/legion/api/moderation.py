"""Moderation actions forwarded to the platform's privileged procedures."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from legion.models import GlobalRank
from legion.platform import ChatBackend
from legion.schemas import ProfileRead, RpcResult
from legion.schemas.moderation import (
    BanRequest,
    PromoteHeadRequest,
    RankChangeRequest,
    ServerRoleAssignRequest,
)
from legion.services.permissions import (
    RPC_ASSIGN_SERVER_ROLE,
    RPC_BAN_USER,
    RPC_CHANGE_USER_RANK,
    RPC_PROMOTE_TO_HEAD,
    assignable_ranks,
    call_privileged,
    can_moderate,
    promotion_unavailable_reason,
)

from .deps import get_backend, get_current_user_id, load_profile

router = APIRouter(prefix="/moderation", tags=["moderation"])

logger = logging.getLogger(__name__)


async def _load_pair(
    backend: ChatBackend, actor_id: str, target_id: str
) -> tuple[ProfileRead, ProfileRead]:
    actor = await load_profile(backend, actor_id)
    target = await load_profile(backend, target_id)
    return actor, target


def _ensure_can_moderate(actor: ProfileRead, target: ProfileRead) -> None:
    if not can_moderate(actor.global_rank, target.global_rank, target.is_banned, actor.id == target.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You cannot moderate this user",
        )


@router.post("/ban", response_model=RpcResult)
async def ban_user(
    payload: BanRequest,
    user_id: str = Depends(get_current_user_id),
    backend: ChatBackend = Depends(get_backend),
) -> RpcResult:
    actor, target = await _load_pair(backend, user_id, payload.target_user_id)
    _ensure_can_moderate(actor, target)
    logger.info("User %s banning %s", actor.id, target.id)
    return await call_privileged(
        backend, RPC_BAN_USER, {"target_user_id": target.id, "reason": payload.reason}
    )


@router.post("/rank", response_model=RpcResult)
async def change_rank(
    payload: RankChangeRequest,
    user_id: str = Depends(get_current_user_id),
    backend: ChatBackend = Depends(get_backend),
) -> RpcResult:
    actor, target = await _load_pair(backend, user_id, payload.target_user_id)
    _ensure_can_moderate(actor, target)
    allowed = assignable_ranks(actor.global_rank, [rank.value for rank in GlobalRank])
    if payload.new_rank not in allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You cannot grant a rank equal to or above your own",
        )
    return await call_privileged(
        backend, RPC_CHANGE_USER_RANK, {"target_user_id": target.id, "new_rank": payload.new_rank}
    )


@router.post("/server-role", response_model=RpcResult)
async def assign_server_role(
    payload: ServerRoleAssignRequest,
    user_id: str = Depends(get_current_user_id),
    backend: ChatBackend = Depends(get_backend),
) -> RpcResult:
    actor, target = await _load_pair(backend, user_id, payload.target_user_id)
    _ensure_can_moderate(actor, target)
    return await call_privileged(
        backend,
        RPC_ASSIGN_SERVER_ROLE,
        {"target_user_id": target.id, "server_id": payload.server_id, "role_id": payload.role_id},
    )


@router.post("/promote-head", response_model=RpcResult)
async def promote_to_head(
    payload: PromoteHeadRequest,
    user_id: str = Depends(get_current_user_id),
    backend: ChatBackend = Depends(get_backend),
) -> RpcResult:
    actor, target = await _load_pair(backend, user_id, payload.target_user_id)
    reason = promotion_unavailable_reason(actor.global_rank, payload.server_slug, target.global_rank)
    if reason is not None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=reason)
    return await call_privileged(backend, RPC_PROMOTE_TO_HEAD, {"target_user_id": target.id})
