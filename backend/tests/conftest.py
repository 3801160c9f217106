"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Iterable, Iterator, Sequence

import anyio
import jwt
import pytest
from fastapi.testclient import TestClient

from legion.api.deps import get_backend_factory
from legion.config import Settings, get_settings
from legion.main import app
from legion.models import AttachmentKind
from legion.platform import BackendError, EventHandler, RealtimeSubscription
from legion.schemas import (
    AttachmentRead,
    ChannelRead,
    DirectMessageRead,
    MemberRead,
    MentionRecord,
    MessageRead,
    PinnedMessageRead,
    ProfileRead,
    ServerRoleRead,
)
from legion.services.conversation import ConversationView


class FakeBackend:
    """In-memory stand-in for the platform used by the core tests."""

    def __init__(self) -> None:
        self.messages: dict[str, MessageRead] = {}
        self.direct_messages: dict[str, DirectMessageRead] = {}
        self.attachments: list[AttachmentRead] = []
        self.profiles: dict[str, ProfileRead] = {}
        self.pins: dict[str, set[str]] = {}
        self.pinned_by: dict[str, str] = {}
        self.mentions: list[MentionRecord] = []
        self.storage: dict[str, bytes] = {}
        self.deleted_paths: list[str] = []
        self.rpc_calls: list[tuple[str, dict[str, Any]]] = []
        self.rpc_results: dict[str, Any] = {}
        self.failures: dict[str, BackendError] = {}
        self.fail_upload_on_call: int | None = None
        self.gates: dict[str, anyio.Event] = {}
        self.calls: list[str] = []
        self.session: dict[str, Any] | None = None
        self.session_delay = 0.0
        self.active_subscriptions: list[tuple[str, str, EventHandler]] = []
        self.subscribe_count = 0
        self._ids = count(1)
        self._upload_calls = 0
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    # Helpers used by tests

    def next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    def tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def add_profile(self, user_id: str, username: str, global_rank: str | None = "user") -> ProfileRead:
        profile = ProfileRead(id=user_id, username=username, global_rank=global_rank)
        self.profiles[user_id] = profile
        return profile

    def add_message(
        self,
        channel_id: str,
        user_id: str,
        content: str,
        *,
        message_id: str | None = None,
        parent_message_id: str | None = None,
    ) -> MessageRead:
        message = MessageRead(
            id=message_id or self.next_id("m"),
            content=content,
            user_id=user_id,
            channel_id=channel_id,
            created_at=self.tick(),
            parent_message_id=parent_message_id,
        )
        self.messages[message.id] = message
        return message

    def add_direct_message(
        self, sender_id: str, receiver_id: str, content: str, *, read: bool = False
    ) -> DirectMessageRead:
        message = DirectMessageRead(
            id=self.next_id("dm"),
            content=content,
            sender_id=sender_id,
            receiver_id=receiver_id,
            created_at=self.tick(),
            read=read,
        )
        self.direct_messages[message.id] = message
        return message

    def message_record(self, channel_id: str, user_id: str, content: str, **extra: Any) -> dict[str, Any]:
        """Row as the realtime stream would deliver it, without storing it."""

        record = {
            "id": extra.pop("id", None) or self.next_id("m"),
            "content": content,
            "user_id": user_id,
            "channel_id": channel_id,
            "created_at": self.tick().isoformat(),
        }
        record.update(extra)
        return record

    async def push(self, table: str, record: dict[str, Any]) -> None:
        for _, sub_table, handler in list(self.active_subscriptions):
            if sub_table == table:
                await handler(record)

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        gate = self.gates.pop(operation, None)
        if gate is not None:
            await gate.wait()
        error = self.failures.get(operation)
        if error is not None:
            raise error

    # ChatBackend

    async def fetch_messages(self, channel_id: str, limit: int) -> list[MessageRead]:
        await self._enter("fetch_messages")
        rows = [message for message in self.messages.values() if message.channel_id == channel_id]
        rows.sort(key=lambda message: message.created_at, reverse=True)
        return rows[:limit]

    async def fetch_direct_messages(
        self, user_id: str, friend_id: str, limit: int
    ) -> list[DirectMessageRead]:
        await self._enter("fetch_direct_messages")
        pair = {user_id, friend_id}
        rows = [
            message
            for message in self.direct_messages.values()
            if {message.sender_id, message.receiver_id} == pair
        ]
        rows.sort(key=lambda message: message.created_at, reverse=True)
        return rows[:limit]

    async def insert_message(
        self,
        *,
        channel_id: str,
        user_id: str,
        content: str,
        parent_message_id: str | None = None,
    ) -> MessageRead:
        await self._enter("insert_message")
        return self.add_message(channel_id, user_id, content, parent_message_id=parent_message_id)

    async def update_message(self, message_id: str, content: str) -> MessageRead:
        await self._enter("update_message")
        updated = self.messages[message_id].model_copy(update={"content": content, "edited_at": self.tick()})
        self.messages[message_id] = updated
        return updated

    async def delete_message(self, message_id: str) -> None:
        await self._enter("delete_message")
        self.messages.pop(message_id, None)

    async def insert_direct_message(
        self,
        *,
        sender_id: str,
        receiver_id: str,
        content: str,
        parent_message_id: str | None = None,
    ) -> DirectMessageRead:
        await self._enter("insert_direct_message")
        message = self.add_direct_message(sender_id, receiver_id, content)
        if parent_message_id:
            message = message.model_copy(update={"parent_message_id": parent_message_id})
            self.direct_messages[message.id] = message
        return message

    async def update_direct_message(self, message_id: str, content: str) -> DirectMessageRead:
        await self._enter("update_direct_message")
        updated = self.direct_messages[message_id].model_copy(
            update={"content": content, "edited_at": self.tick()}
        )
        self.direct_messages[message_id] = updated
        return updated

    async def delete_direct_message(self, message_id: str) -> None:
        await self._enter("delete_direct_message")
        self.direct_messages.pop(message_id, None)

    async def mark_direct_messages_read(self, receiver_id: str, sender_id: str) -> None:
        await self._enter("mark_direct_messages_read")
        for key, message in list(self.direct_messages.items()):
            if message.receiver_id == receiver_id and message.sender_id == sender_id:
                self.direct_messages[key] = message.model_copy(update={"read": True})

    async def fetch_attachments(
        self, message_ids: Sequence[str], kind: AttachmentKind
    ) -> list[AttachmentRead]:
        await self._enter("fetch_attachments")
        wanted = set(message_ids)
        return [item for item in self.attachments if getattr(item, kind.foreign_key) in wanted]

    async def insert_attachments(self, rows: Sequence[dict[str, Any]]) -> list[AttachmentRead]:
        await self._enter("insert_attachments")
        created = [AttachmentRead(id=self.next_id("a"), **row) for row in rows]
        self.attachments.extend(created)
        return created

    async def fetch_profiles(self, user_ids: Iterable[str]) -> list[ProfileRead]:
        await self._enter("fetch_profiles")
        return [self.profiles[user_id] for user_id in set(user_ids) if user_id in self.profiles]

    async def fetch_pinned_messages(self, channel_id: str) -> list[PinnedMessageRead]:
        await self._enter("fetch_pinned_messages")
        return [
            PinnedMessageRead(
                message_id=message_id,
                channel_id=channel_id,
                server_id="s1",
                pinned_by=self.pinned_by.get(message_id, "me"),
                pinned_at=self.tick(),
                message=self.messages.get(message_id),
            )
            for message_id in sorted(self.pins.get(channel_id, set()))
        ]

    async def pin_message(
        self, *, message_id: str, channel_id: str, server_id: str, pinned_by: str
    ) -> None:
        await self._enter("pin_message")
        pins = self.pins.setdefault(channel_id, set())
        if message_id in pins:
            raise BackendError("duplicate key value violates unique constraint", status_code=409)
        pins.add(message_id)
        self.pinned_by[message_id] = pinned_by

    async def unpin_message(self, *, message_id: str, channel_id: str) -> None:
        await self._enter("unpin_message")
        self.pins.get(channel_id, set()).discard(message_id)

    async def fetch_reply_counts(self, message_ids: Sequence[str]) -> dict[str, int]:
        await self._enter("fetch_reply_counts")
        wanted = set(message_ids)
        return dict(
            Counter(
                message.parent_message_id
                for message in self.messages.values()
                if message.parent_message_id in wanted
            )
        )

    async def insert_mentions(self, records: Sequence[MentionRecord]) -> None:
        await self._enter("insert_mentions")
        self.mentions.extend(records)

    async def upload_file(self, path: str, data: bytes, content_type: str | None = None) -> None:
        await self._enter("upload_file")
        self._upload_calls += 1
        if self.fail_upload_on_call == self._upload_calls:
            raise BackendError("storage unavailable", status_code=503)
        self.storage[path] = data

    async def delete_files(self, paths: Sequence[str]) -> None:
        await self._enter("delete_files")
        for path in paths:
            self.storage.pop(path, None)
            self.deleted_paths.append(path)

    def public_url(self, path: str) -> str:
        return f"https://files.example/{path}"

    async def subscribe(
        self,
        topic: str,
        *,
        table: str,
        filter: str | None,
        handler: EventHandler,
        event: str = "INSERT",
    ) -> RealtimeSubscription:
        await self._enter("subscribe")
        self.subscribe_count += 1
        entry = (topic, table, handler)
        self.active_subscriptions.append(entry)

        async def _cleanup() -> None:
            if entry in self.active_subscriptions:
                self.active_subscriptions.remove(entry)

        return RealtimeSubscription(topic, _cleanup)

    async def rpc(self, name: str, params: dict[str, Any]) -> Any:
        await self._enter(f"rpc:{name}")
        self.rpc_calls.append((name, params))
        return self.rpc_results.get(name, {"success": True})

    async def get_session(self) -> dict[str, Any] | None:
        await self._enter("get_session")
        if self.session_delay:
            await anyio.sleep(self.session_delay)
        return self.session


async def wait_until(predicate, attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate`` holds."""

    for _ in range(attempts):
        if predicate():
            return
        await anyio.sleep(0)
    raise AssertionError("condition was not reached")


def make_member(user_id: str, username: str, role_rank: int | None = None, **extra: Any) -> MemberRead:
    role = None
    if role_rank is not None:
        role = ServerRoleRead(id=f"role-{role_rank}", name=f"Role {role_rank}", rank=role_rank)
    return MemberRead(id=user_id, username=username, role=role, **extra)


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment."""

    return Settings(
        _env_file=None,
        platform_jwt_secret="test-secret",
        preferences_path=tmp_path / "preferences.json",
        auth_check_timeout_seconds=0.05,
        professor_role_keys={"srv-business": "business_mastery_professor"},
    )


@pytest.fixture()
def fake_backend() -> FakeBackend:
    backend = FakeBackend()
    backend.add_profile("me", "Ari", "admin")
    backend.add_profile("u2", "Bex", "user")
    backend.add_profile("u3", "Cato", "coach")
    return backend


@pytest.fixture()
def channel() -> ChannelRead:
    return ChannelRead(id="c1", name="general", server_id="s1")


@pytest.fixture()
def members() -> list[MemberRead]:
    return [
        make_member("me", "Ari", 1, global_rank="admin"),
        make_member("u2", "Bex", global_rank="user"),
        make_member("u3", "Cato", 2, global_rank="coach"),
    ]


@pytest.fixture()
def view(fake_backend, settings, members) -> ConversationView:
    return ConversationView(
        fake_backend,
        user_id="me",
        username="Ari",
        global_rank="admin",
        members=members,
        settings=settings,
    )


@pytest.fixture()
def access_token() -> str:
    settings = get_settings()
    return jwt.encode(
        {"sub": "me", "aud": settings.platform_jwt_audience},
        settings.platform_jwt_secret,
        algorithm=settings.platform_jwt_algorithm,
    )


@pytest.fixture()
def client(fake_backend) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient whose backend is the in-memory fake."""

    app.dependency_overrides[get_backend_factory] = lambda: (lambda token: fake_backend)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
