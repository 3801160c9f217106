"""Registry of conversation views attached to open gateway websockets."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Set

from legion.monitoring.metrics import conversation_connections

from .conversation import ConversationView

logger = logging.getLogger(__name__)


class ConversationSessionHub:
    """Tracks the live view of every connected client, grouped by user."""

    def __init__(self) -> None:
        self._views: Dict[str, Set[ConversationView]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str, view: ConversationView) -> None:
        async with self._lock:
            self._views[user_id].add(view)
        conversation_connections.inc()

    async def disconnect(self, user_id: str, view: ConversationView) -> None:
        async with self._lock:
            views = self._views.get(user_id)
            if not views or view not in views:
                return
            views.discard(view)
            if not views:
                self._views.pop(user_id, None)
        conversation_connections.dec()
        await view.close()

    def active_count(self, user_id: str | None = None) -> int:
        if user_id is not None:
            return len(self._views.get(user_id, ()))
        return sum(len(views) for views in self._views.values())

    async def close_all(self) -> None:
        async with self._lock:
            entries = [(user_id, view) for user_id, views in self._views.items() for view in views]
            self._views.clear()
        for _, view in entries:
            conversation_connections.dec()
            await view.close()
        if entries:
            logger.info("Closed %d conversation view(s)", len(entries))


conversation_sessions = ConversationSessionHub()
"""Singleton hub for the gateway's conversation websockets."""
