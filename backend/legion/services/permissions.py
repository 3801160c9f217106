"""Client-side permission resolution.

Every decision here mirrors a rule the platform enforces on its own. The
results gate controls in the interface; the platform's answer is the one that
counts, so callers must still handle a rejection from the backend.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from legion.models import SUPER_RANKS, GlobalRank
from legion.platform import BackendError, ChatBackend
from legion.schemas import ChannelRead, RpcResult

from .ranks import rank_power_level

logger = logging.getLogger(__name__)

HEADQUARTERS_SLUG = "headquarters"
DEFAULT_PIN_MIN_POWER_LEVEL = 70

# Privileged procedures exposed by the platform
RPC_CAN_UPLOAD_COURSES = "can_upload_courses_to_server"
RPC_BAN_USER = "ban_user"
RPC_CHANGE_USER_RANK = "change_user_rank"
RPC_ASSIGN_SERVER_ROLE = "assign_server_role"
RPC_PROMOTE_TO_HEAD = "promote_user_to_the_head"


class PermissionDenied(Exception):
    """Raised when a local check refuses an action before it reaches the platform."""


def can_write(channel: ChannelRead, actor_global_rank: str | None) -> bool:
    """
    Decide whether the actor may post in ``channel``.

    Only the global rank is considered; server roles never grant posting.

    Args:
        channel: Channel with its optional writer allow-list
        actor_global_rank: Rank key of the actor

    Returns:
        True when the allow-list is empty or missing, or contains the rank
    """
    if not channel.allowed_writer_roles:
        return True
    return actor_global_rank is not None and actor_global_rank in channel.allowed_writer_roles


def write_denied_notice(channel: ChannelRead) -> str:
    return f"You do not have permission to send messages in #{channel.name}"


def can_moderate(
    actor_rank: str | None,
    target_rank: str | None,
    target_is_banned: bool,
    actor_is_target: bool,
) -> bool:
    """
    Decide whether the actor may ban, promote or demote the target.

    Peers of equal power level may moderate each other, unlike
    :func:`legion.services.ranks.can_manage` which is strict.

    Args:
        actor_rank: Rank key of the acting member
        target_rank: Rank key of the member being acted on
        target_is_banned: Whether the target is already banned
        actor_is_target: Whether the actor is acting on themselves

    Returns:
        True if the action may be offered
    """
    if actor_is_target or target_is_banned:
        return False
    return rank_power_level(actor_rank) >= rank_power_level(target_rank)


def can_upload_course_content(
    actor_global_rank: str | None,
    actor_server_role_key: str | None,
    server_id: str,
    professor_role_keys: Mapping[str, str],
) -> bool:
    """
    Advisory check for course uploads in a server.

    Super ranks may upload everywhere. Otherwise the actor's role in this
    server must be the professor role configured for it.

    Args:
        actor_global_rank: Rank key of the actor
        actor_server_role_key: Role key the actor holds in ``server_id``
        server_id: Server the upload targets
        professor_role_keys: Mapping of server id to its professor role key

    Returns:
        True if the upload controls may be shown
    """
    if actor_global_rank in SUPER_RANKS:
        return True
    professor_key = professor_role_keys.get(server_id)
    return professor_key is not None and actor_server_role_key == professor_key


def assignable_ranks(actor_rank: str | None, all_ranks: Iterable[str]) -> list[str]:
    """Ranks the actor may grant: those strictly below their own power level."""

    ceiling = rank_power_level(actor_rank)
    return [rank for rank in all_ranks if rank_power_level(rank) < ceiling]


def promotion_unavailable_reason(
    actor_rank: str | None, server_slug: str | None, target_rank: str | None
) -> str | None:
    """Return why promotion to the top rank is not offered, or ``None`` if it is."""

    if actor_rank != GlobalRank.APP_DEVELOPER.value:
        return "Only App Developers can manage roles."
    if server_slug != HEADQUARTERS_SLUG:
        return "Role management is only available in Headquarters."
    if target_rank == GlobalRank.THE_HEAD.value:
        return "This user is already The Head."
    return None


def can_promote_to_head(
    actor_rank: str | None, server_slug: str | None, target_rank: str | None
) -> bool:
    return promotion_unavailable_reason(actor_rank, server_slug, target_rank) is None


def can_pin_messages(actor_rank: str | None, min_power_level: int = DEFAULT_PIN_MIN_POWER_LEVEL) -> bool:
    return rank_power_level(actor_rank) >= min_power_level


async def check_course_upload(backend: ChatBackend, user_id: str, server_id: str) -> bool:
    """Ask the platform whether ``user_id`` may upload courses to ``server_id``."""

    try:
        result = await backend.rpc(
            RPC_CAN_UPLOAD_COURSES, {"check_user_id": user_id, "check_server_id": server_id}
        )
    except BackendError:
        logger.warning(
            "Course upload check failed for server %s",
            server_id,
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return False
    return result is True


async def call_privileged(backend: ChatBackend, name: str, params: dict[str, Any]) -> RpcResult:
    """
    Invoke a privileged procedure and normalize its outcome.

    A platform error becomes an unsuccessful result carrying the platform's
    message, so callers can show it verbatim.
    """
    try:
        payload = await backend.rpc(name, params)
    except BackendError as exc:
        logger.info("Procedure %s rejected: %s", name, exc.message)
        return RpcResult(success=False, error=exc.message or "Request failed")
    if isinstance(payload, dict):
        result = RpcResult.model_validate(payload)
        if not result.success and not result.error:
            result.error = "Request failed"
        return result
    return RpcResult(success=payload is not False)
