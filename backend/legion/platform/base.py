"""Capability interface the chat core expects from the backend platform."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Callable, Iterable, Protocol, Sequence

from legion.models import AttachmentKind
from legion.schemas import (
    AttachmentRead,
    DirectMessageRead,
    MentionRecord,
    MessageRead,
    PinnedMessageRead,
    ProfileRead,
)


EventHandler = Callable[[dict[str, Any]], Awaitable[None]]


class BackendError(RuntimeError):
    """Raised when the platform rejects a request or cannot be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def is_authorization_error(self) -> bool:
        return self.status_code in (401, 403)


class RealtimeSubscription:
    """Handle returned when subscribing to a realtime topic."""

    def __init__(
        self,
        topic: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._topic = topic
        self._cleanup = cleanup
        self._task = task
        self._closed = False

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


class ChatBackend(Protocol):
    """Operations the chat core performs against the platform.

    Row-level ownership and authorization are enforced by the platform; none
    of the client-side checks made before calling these methods are
    authoritative. Every method raises :class:`BackendError` on failure.
    """

    async def fetch_messages(self, channel_id: str, limit: int) -> list[MessageRead]:
        """Return up to ``limit`` channel messages, newest first."""

    async def fetch_direct_messages(
        self, user_id: str, friend_id: str, limit: int
    ) -> list[DirectMessageRead]:
        """Return up to ``limit`` messages exchanged by the pair, newest first."""

    async def insert_message(
        self,
        *,
        channel_id: str,
        user_id: str,
        content: str,
        parent_message_id: str | None = None,
    ) -> MessageRead: ...

    async def update_message(self, message_id: str, content: str) -> MessageRead: ...

    async def delete_message(self, message_id: str) -> None: ...

    async def insert_direct_message(
        self,
        *,
        sender_id: str,
        receiver_id: str,
        content: str,
        parent_message_id: str | None = None,
    ) -> DirectMessageRead: ...

    async def update_direct_message(self, message_id: str, content: str) -> DirectMessageRead: ...

    async def delete_direct_message(self, message_id: str) -> None: ...

    async def mark_direct_messages_read(self, receiver_id: str, sender_id: str) -> None: ...

    async def fetch_attachments(
        self, message_ids: Sequence[str], kind: AttachmentKind
    ) -> list[AttachmentRead]: ...

    async def insert_attachments(self, rows: Sequence[dict[str, Any]]) -> list[AttachmentRead]: ...

    async def fetch_profiles(self, user_ids: Iterable[str]) -> list[ProfileRead]: ...

    async def fetch_pinned_messages(self, channel_id: str) -> list[PinnedMessageRead]:
        """Return the pins of ``channel_id`` with their messages, most recent first."""

    async def pin_message(
        self, *, message_id: str, channel_id: str, server_id: str, pinned_by: str
    ) -> None: ...

    async def unpin_message(self, *, message_id: str, channel_id: str) -> None: ...

    async def fetch_reply_counts(self, message_ids: Sequence[str]) -> dict[str, int]: ...

    async def insert_mentions(self, records: Sequence[MentionRecord]) -> None: ...

    async def upload_file(self, path: str, data: bytes, content_type: str | None = None) -> None: ...

    async def delete_files(self, paths: Sequence[str]) -> None: ...

    def public_url(self, path: str) -> str: ...

    async def subscribe(
        self,
        topic: str,
        *,
        table: str,
        filter: str | None,
        handler: EventHandler,
        event: str = "INSERT",
    ) -> RealtimeSubscription:
        """
        Deliver changes to ``table`` rows matching ``filter`` to ``handler``.

        ``event`` is ``INSERT``, ``UPDATE``, ``DELETE`` or ``*`` for all three.
        Deleted rows are delivered as their old record.
        """

    async def rpc(self, name: str, params: dict[str, Any]) -> Any: ...

    async def get_session(self) -> dict[str, Any] | None:
        """Return the signed-in user, or ``None`` when there is no session."""
