"""HTTP implementation of the chat backend capabilities."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError
from websockets.exceptions import WebSocketException

from legion.config import Settings, get_settings
from legion.models import AttachmentKind
from legion.monitoring.metrics import platform_requests_total
from legion.schemas import (
    AttachmentRead,
    DirectMessageRead,
    MentionRecord,
    MessageRead,
    PinnedMessageRead,
    ProfileRead,
)

from .base import BackendError, EventHandler, RealtimeSubscription
from .realtime import RealtimeClient


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_MESSAGE_SELECT = "*,author:profiles!user_id(id,username,avatar_url,global_rank)"
_DIRECT_MESSAGE_SELECT = "*,author:profiles!sender_id(id,username,avatar_url,global_rank)"


def _in_filter(values: Iterable[str]) -> str:
    return "in.(" + ",".join(f'"{value}"' for value in values) + ")"


class PlatformClient:
    """Talks to the platform's REST, RPC, storage and auth endpoints for one user.

    Args:
        access_token: The signed-in user's access token; requests are made on
            their behalf so row-level security applies.
        settings: Optional settings override.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        access_token: str | None = None,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        realtime: RealtimeClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.access_token = access_token
        self._client = httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds,
            transport=transport,
            headers=self._get_headers(),
        )
        self._realtime = realtime

    def _get_headers(self) -> dict[str, str]:
        """Get headers for API requests."""
        headers = {"apikey": self.settings.platform_anon_key}
        token = self.access_token or self.settings.platform_anon_key
        headers["Authorization"] = f"Bearer {token}"
        return headers

    async def aclose(self) -> None:
        if self._realtime is not None:
            await self._realtime.close()
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        params: dict[str, str] | None = None,
        json: Any = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method, url, params=params, json=json, content=content, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            platform_requests_total.inc(operation=operation, outcome="rejected")
            raise BackendError(
                self._error_message(exc.response), status_code=exc.response.status_code
            ) from exc
        except httpx.HTTPError as exc:
            platform_requests_total.inc(operation=operation, outcome="unreachable")
            logger.warning(
                "Platform request %s failed", operation, exc_info=logger.isEnabledFor(logging.DEBUG)
            )
            raise BackendError(f"Could not reach the server: {exc}") from exc
        platform_requests_total.inc(operation=operation, outcome="ok")
        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict):
            for key in ("message", "msg", "error_description", "error"):
                if body.get(key):
                    return str(body[key])
        return response.reason_phrase

    @staticmethod
    def _decode(model: type[ModelT], row: Any) -> ModelT:
        try:
            return model.model_validate(row)
        except ValidationError as exc:
            logger.warning("Platform returned an undecodable %s row: %s", model.__name__, exc)
            raise BackendError(
                f"Received an invalid {model.__name__} from the server", status_code=502
            ) from exc

    def _decode_rows(self, model: type[ModelT], rows: Iterable[Any]) -> list[ModelT]:
        return [self._decode(model, row) for row in rows]

    async def _select(self, table: str, params: dict[str, str], *, operation: str) -> list[dict[str, Any]]:
        rows = await self._request(
            "GET", f"{self.settings.rest_url}/{table}", params=params, operation=operation
        )
        return rows or []

    async def _insert(self, table: str, payload: Any, *, operation: str) -> list[dict[str, Any]]:
        rows = await self._request(
            "POST",
            f"{self.settings.rest_url}/{table}",
            json=payload,
            headers={"Prefer": "return=representation"},
            operation=operation,
        )
        return rows or []

    async def _patch(
        self, table: str, params: dict[str, str], payload: dict[str, Any], *, operation: str
    ) -> list[dict[str, Any]]:
        rows = await self._request(
            "PATCH",
            f"{self.settings.rest_url}/{table}",
            params=params,
            json=payload,
            headers={"Prefer": "return=representation"},
            operation=operation,
        )
        return rows or []

    async def _delete(self, table: str, params: dict[str, str], *, operation: str) -> None:
        await self._request("DELETE", f"{self.settings.rest_url}/{table}", params=params, operation=operation)

    # Messages

    async def fetch_messages(self, channel_id: str, limit: int) -> list[MessageRead]:
        rows = await self._select(
            "messages",
            {
                "select": _MESSAGE_SELECT,
                "channel_id": f"eq.{channel_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
            operation="fetch_messages",
        )
        return self._decode_rows(MessageRead, rows)

    async def fetch_direct_messages(
        self, user_id: str, friend_id: str, limit: int
    ) -> list[DirectMessageRead]:
        pair = (
            f"(and(sender_id.eq.{user_id},receiver_id.eq.{friend_id}),"
            f"and(sender_id.eq.{friend_id},receiver_id.eq.{user_id}))"
        )
        rows = await self._select(
            "direct_messages",
            {
                "select": _DIRECT_MESSAGE_SELECT,
                "or": pair,
                "order": "created_at.desc",
                "limit": str(limit),
            },
            operation="fetch_direct_messages",
        )
        return self._decode_rows(DirectMessageRead, rows)

    async def insert_message(
        self,
        *,
        channel_id: str,
        user_id: str,
        content: str,
        parent_message_id: str | None = None,
    ) -> MessageRead:
        payload = {"channel_id": channel_id, "user_id": user_id, "content": content}
        if parent_message_id:
            payload["parent_message_id"] = parent_message_id
        rows = await self._insert("messages", payload, operation="insert_message")
        if not rows:
            raise BackendError("Message was not created")
        return self._decode(MessageRead, rows[0])

    async def update_message(self, message_id: str, content: str) -> MessageRead:
        rows = await self._patch(
            "messages",
            {"id": f"eq.{message_id}"},
            {"content": content, "edited_at": datetime.now(timezone.utc).isoformat()},
            operation="update_message",
        )
        if not rows:
            raise BackendError("Message not found or not editable", status_code=403)
        return self._decode(MessageRead, rows[0])

    async def delete_message(self, message_id: str) -> None:
        await self._delete("messages", {"id": f"eq.{message_id}"}, operation="delete_message")

    async def insert_direct_message(
        self,
        *,
        sender_id: str,
        receiver_id: str,
        content: str,
        parent_message_id: str | None = None,
    ) -> DirectMessageRead:
        payload = {"sender_id": sender_id, "receiver_id": receiver_id, "content": content}
        if parent_message_id:
            payload["parent_message_id"] = parent_message_id
        rows = await self._insert("direct_messages", payload, operation="insert_direct_message")
        if not rows:
            raise BackendError("Message was not created")
        return self._decode(DirectMessageRead, rows[0])

    async def update_direct_message(self, message_id: str, content: str) -> DirectMessageRead:
        rows = await self._patch(
            "direct_messages",
            {"id": f"eq.{message_id}"},
            {"content": content, "edited_at": datetime.now(timezone.utc).isoformat()},
            operation="update_direct_message",
        )
        if not rows:
            raise BackendError("Message not found or not editable", status_code=403)
        return self._decode(DirectMessageRead, rows[0])

    async def delete_direct_message(self, message_id: str) -> None:
        await self._delete(
            "direct_messages", {"id": f"eq.{message_id}"}, operation="delete_direct_message"
        )

    async def mark_direct_messages_read(self, receiver_id: str, sender_id: str) -> None:
        await self._patch(
            "direct_messages",
            {"receiver_id": f"eq.{receiver_id}", "sender_id": f"eq.{sender_id}", "read": "eq.false"},
            {"read": True},
            operation="mark_direct_messages_read",
        )

    # Attachments, profiles, pins, replies and mentions

    async def fetch_attachments(
        self, message_ids: Sequence[str], kind: AttachmentKind
    ) -> list[AttachmentRead]:
        if not message_ids:
            return []
        rows = await self._select(
            "message_attachments",
            {"select": "*", kind.foreign_key: _in_filter(message_ids)},
            operation="fetch_attachments",
        )
        return self._decode_rows(AttachmentRead, rows)

    async def insert_attachments(self, rows: Sequence[dict[str, Any]]) -> list[AttachmentRead]:
        if not rows:
            return []
        created = await self._insert("message_attachments", list(rows), operation="insert_attachments")
        return self._decode_rows(AttachmentRead, created)

    async def fetch_profiles(self, user_ids: Iterable[str]) -> list[ProfileRead]:
        unique = sorted(set(user_ids))
        if not unique:
            return []
        rows = await self._select(
            "profiles",
            {"select": "id,username,avatar_url,global_rank,is_banned", "id": _in_filter(unique)},
            operation="fetch_profiles",
        )
        return self._decode_rows(ProfileRead, rows)

    async def fetch_pinned_messages(self, channel_id: str) -> list[PinnedMessageRead]:
        rows = await self._select(
            "pinned_messages",
            {
                "select": f"*,message:messages({_MESSAGE_SELECT})",
                "channel_id": f"eq.{channel_id}",
                "order": "pinned_at.desc",
            },
            operation="fetch_pinned_messages",
        )
        return self._decode_rows(PinnedMessageRead, rows)

    async def pin_message(
        self, *, message_id: str, channel_id: str, server_id: str, pinned_by: str
    ) -> None:
        await self._insert(
            "pinned_messages",
            {
                "message_id": message_id,
                "channel_id": channel_id,
                "server_id": server_id,
                "pinned_by": pinned_by,
            },
            operation="pin_message",
        )

    async def unpin_message(self, *, message_id: str, channel_id: str) -> None:
        await self._delete(
            "pinned_messages",
            {"message_id": f"eq.{message_id}", "channel_id": f"eq.{channel_id}"},
            operation="unpin_message",
        )

    async def fetch_reply_counts(self, message_ids: Sequence[str]) -> dict[str, int]:
        if not message_ids:
            return {}
        rows = await self._select(
            "messages",
            {"select": "parent_message_id", "parent_message_id": _in_filter(message_ids)},
            operation="fetch_reply_counts",
        )
        return dict(Counter(str(row["parent_message_id"]) for row in rows))

    async def insert_mentions(self, records: Sequence[MentionRecord]) -> None:
        if not records:
            return
        await self._insert(
            "mentions", [record.model_dump() for record in records], operation="insert_mentions"
        )

    # Storage

    def _object_url(self, path: str) -> str:
        return f"{self.settings.storage_url}/object/{self.settings.storage_bucket}/{quote(path)}"

    async def upload_file(self, path: str, data: bytes, content_type: str | None = None) -> None:
        await self._request(
            "POST",
            self._object_url(path),
            content=data,
            headers={
                "Content-Type": content_type or "application/octet-stream",
                "x-upsert": "false",
            },
            operation="upload_file",
        )

    async def delete_files(self, paths: Sequence[str]) -> None:
        if not paths:
            return
        await self._request(
            "DELETE",
            f"{self.settings.storage_url}/object/{self.settings.storage_bucket}",
            json={"prefixes": list(paths)},
            operation="delete_files",
        )

    def public_url(self, path: str) -> str:
        return f"{self.settings.storage_url}/object/public/{self.settings.storage_bucket}/{quote(path)}"

    # Realtime, RPC and auth

    async def subscribe(
        self,
        topic: str,
        *,
        table: str,
        filter: str | None,
        handler: EventHandler,
        event: str = "INSERT",
    ) -> RealtimeSubscription:
        if self._realtime is None:
            self._realtime = RealtimeClient(
                self.settings.realtime_url,
                access_token=self.access_token,
                heartbeat_interval=self.settings.realtime_heartbeat_seconds,
            )
        try:
            return await self._realtime.subscribe(
                topic, table=table, filter=filter, handler=handler, event=event
            )
        except (OSError, WebSocketException) as exc:
            raise BackendError(f"Realtime connection failed: {exc}") from exc

    async def rpc(self, name: str, params: dict[str, Any]) -> Any:
        return await self._request(
            "POST", f"{self.settings.rest_url}/rpc/{name}", json=params, operation=f"rpc:{name}"
        )

    async def get_session(self) -> dict[str, Any] | None:
        if not self.access_token:
            return None
        try:
            user = await self._request("GET", f"{self.settings.auth_url}/user", operation="get_session")
        except BackendError as exc:
            if exc.is_authorization_error:
                return None
            raise
        return user or None
