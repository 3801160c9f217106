"""Mention autocomplete and extraction endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from legion.config import get_settings
from legion.schemas.moderation import (
    MentionEntry,
    MentionExtractRequest,
    MentionSuggestRequest,
    MentionSuggestResult,
)
from legion.services.mentions import extract_mentions, filter_candidates, find_mention_trigger

router = APIRouter(prefix="/mentions", tags=["mentions"])


@router.post("/suggest", response_model=MentionSuggestResult)
def suggest_mentions(payload: MentionSuggestRequest) -> MentionSuggestResult:
    trigger = find_mention_trigger(payload.text, payload.caret)
    if trigger is None:
        return MentionSuggestResult(composing=False)
    candidates = filter_candidates(payload.members, trigger.term, get_settings().mention_page_size)
    return MentionSuggestResult(
        composing=True,
        term=trigger.term,
        start=trigger.start,
        candidates=candidates,
    )


@router.post("/extract", response_model=list[MentionEntry])
def extract(payload: MentionExtractRequest) -> list[MentionEntry]:
    return [
        MentionEntry(user_id=mention.user_id, username=mention.username)
        for mention in extract_mentions(payload.text, payload.members)
    ]
