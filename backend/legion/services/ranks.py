"""Rank power levels and display appearance."""

from __future__ import annotations

from legion.models import SUPER_RANKS, GlobalRank
from legion.schemas import RankDisplay, ServerRoleRead

DEFAULT_POWER_LEVEL = 10

# Total order used for every authorization comparison
RANK_POWER_LEVELS: dict[str, int] = {
    GlobalRank.THE_HEAD.value: 100,
    GlobalRank.APP_DEVELOPER.value: 90,
    GlobalRank.ADMIN.value: 70,
    GlobalRank.BUSINESS_MASTERY_PROFESSOR.value: 40,
    GlobalRank.CRYPTO_TRADING_PROFESSOR.value: 40,
    GlobalRank.COPYWRITING_PROFESSOR.value: 40,
    GlobalRank.FITNESS_PROFESSOR.value: 40,
    GlobalRank.BUSINESS_MENTOR.value: 30,
    GlobalRank.CRYPTO_TRADING_MENTOR.value: 30,
    GlobalRank.COPYWRITING_MENTOR.value: 30,
    GlobalRank.COACH.value: 20,
    GlobalRank.USER.value: DEFAULT_POWER_LEVEL,
}

_APPEARANCE: dict[str, tuple[str, str, str]] = {
    GlobalRank.THE_HEAD.value: ("The Head", "👑", "#ef4444"),
    GlobalRank.APP_DEVELOPER.value: ("App Developers", "💻", "#8b5cf6"),
    GlobalRank.ADMIN.value: ("Admins", "🛡️", "#f59e0b"),
    GlobalRank.BUSINESS_MASTERY_PROFESSOR.value: ("Business Mastery Professor", "💼", "#3b82f6"),
    GlobalRank.CRYPTO_TRADING_PROFESSOR.value: ("Crypto Trading Professor", "📈", "#10b981"),
    GlobalRank.COPYWRITING_PROFESSOR.value: ("Copywriting Professor", "✍️", "#ec4899"),
    GlobalRank.FITNESS_PROFESSOR.value: ("Fitness Professor", "💪", "#f59e0b"),
    GlobalRank.BUSINESS_MENTOR.value: ("Business Mentor", "🎓", "#6366f1"),
    GlobalRank.CRYPTO_TRADING_MENTOR.value: ("Crypto Trading Mentor", "📊", "#14b8a6"),
    GlobalRank.COPYWRITING_MENTOR.value: ("Copywriting Mentor", "📝", "#f472b6"),
    GlobalRank.COACH.value: ("Coach", "🏆", "#fb923c"),
    GlobalRank.USER.value: ("Member", "👤", "#64748b"),
}

MEMBER_DISPLAY = RankDisplay(key=GlobalRank.USER.value, label="Member", emoji="👤", color="#64748b")

# Ranks shown everywhere by the per-server rule
ALWAYS_VISIBLE_RANKS: frozenset[str] = SUPER_RANKS | {GlobalRank.ADMIN.value}

SERVER_PROFESSOR_RANKS: dict[str, str] = {
    "Business Mastery": GlobalRank.BUSINESS_MASTERY_PROFESSOR.value,
    "Crypto Trading": GlobalRank.CRYPTO_TRADING_PROFESSOR.value,
    "Copywriting": GlobalRank.COPYWRITING_PROFESSOR.value,
    "Fitness": GlobalRank.FITNESS_PROFESSOR.value,
}


def rank_power_level(rank_key: str | None) -> int:
    """Return the power level of ``rank_key``; unknown or missing keys rank lowest."""

    if not rank_key:
        return DEFAULT_POWER_LEVEL
    return RANK_POWER_LEVELS.get(rank_key, DEFAULT_POWER_LEVEL)


def can_manage(actor_rank: str | None, target_rank: str | None) -> bool:
    """Whether the actor strictly outranks the target. A rank never manages its equal."""

    return rank_power_level(actor_rank) > rank_power_level(target_rank)


def rank_display_info(rank_key: str | None) -> RankDisplay:
    if not rank_key or rank_key not in _APPEARANCE:
        return MEMBER_DISPLAY
    label, emoji, color = _APPEARANCE[rank_key]
    return RankDisplay(key=rank_key, label=label, emoji=emoji, color=color)


def effective_display_rank(
    global_rank: str | None, server_role: ServerRoleRead | None = None
) -> RankDisplay:
    """
    Resolve the rank badge shown next to a member.

    Super ranks always show the global rank. Otherwise an assigned server role
    wins, and without one the global rank's generic appearance is used.

    Args:
        global_rank: The member's platform-wide rank key
        server_role: The member's role in the current server, if any

    Returns:
        Label, emoji and color to render
    """
    if global_rank in SUPER_RANKS:
        return rank_display_info(global_rank)
    if server_role is not None:
        return RankDisplay(
            key=server_role.role_key,
            label=server_role.name,
            emoji=server_role.icon or "",
            color=server_role.color or MEMBER_DISPLAY.color,
        )
    return rank_display_info(global_rank)


def professor_rank_for_server(server_name: str | None) -> str | None:
    if not server_name:
        return None
    return SERVER_PROFESSOR_RANKS.get(server_name)


def display_rank_for_server(
    global_rank: str | None, server_name: str | None, *, headquarters: bool = False
) -> RankDisplay:
    """
    Resolve the badge shown inside a given server by the global rank alone.

    Headquarters shows every global rank. Elsewhere leadership ranks always
    show, a professor only shows inside their own subject server, and every
    other member appears as a plain member.
    """
    if headquarters:
        return rank_display_info(global_rank)
    if global_rank in ALWAYS_VISIBLE_RANKS:
        return rank_display_info(global_rank)
    if global_rank is not None and global_rank == professor_rank_for_server(server_name):
        return rank_display_info(global_rank)
    return MEMBER_DISPLAY
