"""Rank lookup endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query

from legion.models import GlobalRank
from legion.schemas import RankDisplay
from legion.services.permissions import assignable_ranks
from legion.services.ranks import display_rank_for_server, rank_display_info, rank_power_level

router = APIRouter(prefix="/ranks", tags=["ranks"])


@router.get("/assignable", response_model=list[str])
def read_assignable_ranks(actor_rank: str | None = Query(default=None)) -> list[str]:
    """Known ranks the actor may grant, highest first."""

    return assignable_ranks(actor_rank, [rank.value for rank in GlobalRank])


@router.get("/display", response_model=RankDisplay)
def read_display_rank(
    global_rank: str | None = Query(default=None),
    server_name: str | None = Query(default=None),
    headquarters: bool = Query(default=False),
) -> RankDisplay:
    """Badge a member with ``global_rank`` shows inside the named server."""

    return display_rank_for_server(global_rank, server_name, headquarters=headquarters)


@router.get("/{rank_key}")
def read_rank(rank_key: str) -> dict[str, object]:
    display = rank_display_info(rank_key)
    return {**display.model_dump(), "power_level": rank_power_level(rank_key)}
