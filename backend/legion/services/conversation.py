"""State of the message list for the conversation a client has open."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Sequence

from pydantic import ValidationError

from legion.config import Settings, get_settings
from legion.models import AttachmentKind, ConversationKind, ViewState
from legion.monitoring.metrics import (
    duplicate_events_total,
    messages_sent_total,
    stale_results_total,
)
from legion.platform import BackendError, ChatBackend, EventHandler, RealtimeSubscription
from legion.schemas import (
    AttachmentRead,
    ChannelRead,
    DirectMessageRead,
    MemberRead,
    MentionRecord,
    MessageAuthor,
    MessageCreate,
    MessageRead,
    MessageUpdate,
    PinnedMessageRead,
    ProfileRead,
    ServerRoleRead,
)

from .attachments import AttachmentRejected, AttachmentUploadCoordinator, SelectedFile, UploadFailed
from .mentions import MentionComposer, extract_mentions, mentions_user, split_mentions
from .permissions import PermissionDenied, can_pin_messages, can_write, write_denied_notice
from .ranks import effective_display_rank

logger = logging.getLogger(__name__)

ViewMessage = MessageRead | DirectMessageRead
UpdateListener = Callable[[], Awaitable[None]]


class MessageValidationError(ValueError):
    """Raised when input is rejected before anything is sent."""


class ConfirmationRequired(MessageValidationError):
    """Raised when a destructive action is attempted without confirmation."""


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid message"
    message = str(errors[0].get("msg", "Invalid message"))
    return message.removeprefix("Value error, ")


class ConversationView:
    """Message list, pins, reply counts and compose state for one client.

    Only one conversation (a channel or a direct conversation with a friend) is
    open at a time. Every async result is applied only if the conversation it
    was started for is still the open one, and realtime deliveries are merged
    by message id so a message never appears twice.
    """

    def __init__(
        self,
        backend: ChatBackend,
        *,
        user_id: str,
        username: str,
        global_rank: str | None = None,
        avatar_url: str | None = None,
        members: Sequence[MemberRead] = (),
        settings: Settings | None = None,
        on_update: UpdateListener | None = None,
    ) -> None:
        self.backend = backend
        self.settings = settings or get_settings()
        self.user_id = user_id
        self.username = username
        self.global_rank = global_rank
        self.avatar_url = avatar_url
        self.on_update = on_update

        self.uploads = AttachmentUploadCoordinator(backend, settings=self.settings)
        self.composer = MentionComposer(members, page_size=self.settings.mention_page_size)

        self.state = ViewState.IDLE
        self.kind: ConversationKind | None = None
        self.channel: ChannelRead | None = None
        self.friend_id: str | None = None
        self.messages: list[ViewMessage] = []
        self.pinned_ids: set[str] = set()
        self.pins: list[PinnedMessageRead] = []
        self.reply_counts: dict[str, int] = {}
        self.mention_count = 0
        self.show_mentions_only = False
        self.draft = ""
        self.reply_to: str | None = None
        self.edit_drafts: dict[str, str] = {}
        self.sending = False
        self.pin_in_flight = False
        self.error: str | None = None

        self._token = 0
        self._subscription: RealtimeSubscription | None = None
        self._pin_subscription: RealtimeSubscription | None = None
        self._profiles: dict[str, ProfileRead] = {}

    # Context switching

    @property
    def members(self) -> list[MemberRead]:
        return self.composer.members

    def set_members(self, members: Sequence[MemberRead]) -> None:
        self.composer.set_members(members)

    @property
    def subscription(self) -> RealtimeSubscription | None:
        return self._subscription

    @property
    def pin_subscription(self) -> RealtimeSubscription | None:
        return self._pin_subscription

    @property
    def can_write(self) -> bool:
        if self.kind is ConversationKind.CHANNEL and self.channel is not None:
            return can_write(self.channel, self.global_rank)
        return self.kind is ConversationKind.DIRECT

    @property
    def write_notice(self) -> str | None:
        if self.kind is ConversationKind.CHANNEL and self.channel is not None and not self.can_write:
            return write_denied_notice(self.channel)
        return None

    def _is_current(self, token: int) -> bool:
        if token == self._token:
            return True
        stale_results_total.inc()
        return False

    def _begin(self, kind: ConversationKind) -> int:
        self._token += 1
        self.state = ViewState.LOADING
        self.kind = kind
        self.messages = []
        self.pinned_ids = set()
        self.pins = []
        self.reply_counts = {}
        self.mention_count = 0
        self.show_mentions_only = False
        self.reply_to = None
        self.draft = ""
        self.edit_drafts = {}
        self.error = None
        self.composer.update("")
        return self._token

    async def _drop_subscriptions(self) -> None:
        subscriptions = (self._subscription, self._pin_subscription)
        self._subscription = None
        self._pin_subscription = None
        for subscription in subscriptions:
            if subscription is not None:
                await subscription.close()

    async def _subscribe(
        self,
        token: int,
        topic: str,
        *,
        table: str,
        filter: str,
        handler: EventHandler,
        event: str = "INSERT",
    ) -> RealtimeSubscription | None:
        subscription = await self.backend.subscribe(
            topic, table=table, filter=filter, handler=handler, event=event
        )
        if not self._is_current(token):
            await subscription.close()
            return None
        return subscription

    def _message_handler(self, token: int) -> EventHandler:
        async def _handler(record: dict[str, Any]) -> None:
            await self.receive(record, token=token)

        return _handler

    def _merge_loaded(self, loaded: list[ViewMessage]) -> None:
        # Pushes that arrived while the history was loading follow it
        loaded_ids = {message.id for message in loaded}
        early = [message for message in self.messages if message.id not in loaded_ids]
        self.messages = loaded + early

    async def open_channel(self, channel: ChannelRead) -> None:
        """Switch to ``channel`` and load its history and pins."""

        token = self._begin(ConversationKind.CHANNEL)
        self.channel = channel
        self.friend_id = None
        logger.debug("Opening channel %s", channel.id)

        async def _on_pin_change(record: dict[str, Any]) -> None:
            await self._refresh_pins(token)

        try:
            await self._drop_subscriptions()
            subscription = await self._subscribe(
                token,
                f"messages:{channel.id}",
                table="messages",
                filter=f"channel_id=eq.{channel.id}",
                handler=self._message_handler(token),
            )
            if subscription is None:
                return
            self._subscription = subscription
            subscription = await self._subscribe(
                token,
                f"pinned_messages:{channel.id}",
                table="pinned_messages",
                filter=f"channel_id=eq.{channel.id}",
                handler=_on_pin_change,
                event="*",
            )
            if subscription is None:
                return
            self._pin_subscription = subscription
            rows = await self.backend.fetch_messages(channel.id, self.settings.chat_history_limit)
            rows.reverse()
            rows = await self._with_authors(rows)
            ids = [row.id for row in rows]
            attachments = await self.backend.fetch_attachments(ids, AttachmentKind.MESSAGE)
            pins = await self._load_pins(channel.id)
            counts = await self.backend.fetch_reply_counts(ids)
        except BackendError as exc:
            self._fail_load(token, exc)
            raise
        if not self._is_current(token):
            return
        self._merge_loaded(self._attach(rows, attachments, AttachmentKind.MESSAGE))
        self._apply_pins(pins)
        self.reply_counts = {key: value for key, value in counts.items() if value}
        self._recompute_mentions()
        self.state = ViewState.READY

    async def open_direct(self, friend_id: str) -> None:
        """Switch to the direct conversation with ``friend_id`` and load its history."""

        token = self._begin(ConversationKind.DIRECT)
        self.channel = None
        self.friend_id = friend_id
        logger.debug("Opening direct conversation with %s", friend_id)
        try:
            await self._drop_subscriptions()
            pair = ":".join(sorted((self.user_id, friend_id)))
            subscription = await self._subscribe(
                token,
                f"direct_messages:{pair}",
                table="direct_messages",
                filter=f"receiver_id=eq.{self.user_id}",
                handler=self._message_handler(token),
            )
            if subscription is None:
                return
            self._subscription = subscription
            rows = await self.backend.fetch_direct_messages(
                self.user_id, friend_id, self.settings.chat_history_limit
            )
            rows.reverse()
            rows = await self._with_authors(rows)
            attachments = await self.backend.fetch_attachments(
                [row.id for row in rows], AttachmentKind.DIRECT_MESSAGE
            )
        except BackendError as exc:
            self._fail_load(token, exc)
            raise
        if not self._is_current(token):
            return
        self._merge_loaded(self._attach(rows, attachments, AttachmentKind.DIRECT_MESSAGE))
        self._recompute_mentions()
        self.state = ViewState.READY
        await self._mark_read(token)

    async def close(self) -> None:
        """Leave the open conversation and drop its realtime subscriptions."""

        self._token += 1
        await self._drop_subscriptions()
        self.state = ViewState.IDLE
        self.kind = None
        self.channel = None
        self.friend_id = None
        self.messages = []
        self.pinned_ids = set()
        self.pins = []
        self.reply_counts = {}
        self.mention_count = 0

    def _fail_load(self, token: int, exc: BackendError) -> None:
        if token != self._token:
            return
        logger.warning("Failed to load conversation: %s", exc.message)
        self.error = f"Failed to load messages: {exc.message}"
        self.state = ViewState.READY

    async def _mark_read(self, token: int) -> None:
        if self.friend_id is None:
            return
        try:
            await self.backend.mark_direct_messages_read(self.user_id, self.friend_id)
        except BackendError:
            logger.warning(
                "Could not mark messages from %s as read",
                self.friend_id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return
        if not self._is_current(token):
            return
        self.messages = [
            message.model_copy(update={"read": True})
            if isinstance(message, DirectMessageRead) and message.receiver_id == self.user_id
            else message
            for message in self.messages
        ]

    # Row decoration

    def _server_role(self, user_id: str) -> ServerRoleRead | None:
        for member in self.members:
            if member.id == user_id:
                return member.role
        return None

    def _ranked(self, author: MessageAuthor) -> MessageAuthor:
        if author.rank is not None:
            return author
        rank = effective_display_rank(author.global_rank, self._server_role(author.id))
        return author.model_copy(update={"rank": rank})

    def _author_from_profile(self, profile: ProfileRead) -> MessageAuthor:
        return MessageAuthor(
            id=profile.id,
            username=profile.username,
            avatar_url=profile.avatar_url,
            global_rank=profile.global_rank,
        )

    def _my_author(self) -> MessageAuthor:
        return self._ranked(
            MessageAuthor(
                id=self.user_id,
                username=self.username,
                avatar_url=self.avatar_url,
                global_rank=self.global_rank,
            )
        )

    async def _with_authors(self, rows: list[ViewMessage]) -> list[ViewMessage]:
        missing = {row.author_id for row in rows if row.author is None} - set(self._profiles)
        if missing:
            for profile in await self.backend.fetch_profiles(missing):
                self._profiles[profile.id] = profile
        decorated: list[ViewMessage] = []
        for row in rows:
            author = row.author
            if author is None:
                profile = self._profiles.get(row.author_id)
                author = self._author_from_profile(profile) if profile else MessageAuthor(id=row.author_id)
            decorated.append(row.model_copy(update={"author": self._ranked(author)}))
        return decorated

    def _with_url(self, attachment: AttachmentRead) -> AttachmentRead:
        if attachment.url:
            return attachment
        return attachment.model_copy(update={"url": self.backend.public_url(attachment.storage_path)})

    def _attach(
        self, rows: Iterable[ViewMessage], attachments: Iterable[AttachmentRead], kind: AttachmentKind
    ) -> list[ViewMessage]:
        grouped: dict[str, list[AttachmentRead]] = defaultdict(list)
        for attachment in attachments:
            parent = getattr(attachment, kind.foreign_key)
            if parent is not None:
                grouped[parent].append(self._with_url(attachment))
        return [
            row.model_copy(update={"attachments": grouped[row.id]}) if grouped.get(row.id) else row
            for row in rows
        ]

    # Pins

    async def _load_pins(self, channel_id: str) -> list[PinnedMessageRead]:
        pins = await self.backend.fetch_pinned_messages(channel_id)
        messages = await self._with_authors([pin.message for pin in pins if pin.message is not None])
        by_id = {message.id: message for message in messages}
        return [
            pin.model_copy(update={"message": by_id[pin.message_id]}) if pin.message_id in by_id else pin
            for pin in pins
        ]

    def _apply_pins(self, pins: list[PinnedMessageRead]) -> None:
        self.pins = list(pins)
        self.pinned_ids = {pin.message_id for pin in pins}

    async def _refresh_pins(self, token: int) -> None:
        channel = self.channel
        if not self._is_current(token) or channel is None:
            return
        try:
            pins = await self._load_pins(channel.id)
        except BackendError:
            logger.warning(
                "Could not reload pins for channel %s",
                channel.id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return
        if not self._is_current(token):
            return
        self._apply_pins(pins)
        if self.on_update is not None:
            await self.on_update()

    # Realtime

    def _belongs_here(self, message: ViewMessage) -> bool:
        if isinstance(message, MessageRead):
            return self.channel is not None and message.channel_id == self.channel.id
        return {message.sender_id, message.receiver_id} == {self.user_id, self.friend_id}

    def _decode(self, record: dict[str, Any]) -> ViewMessage | None:
        model = MessageRead if self.kind is ConversationKind.CHANNEL else DirectMessageRead
        try:
            return model.model_validate(record)
        except ValidationError:
            logger.warning("Dropping malformed realtime record", exc_info=logger.isEnabledFor(logging.DEBUG))
            return None

    def _contains(self, message_id: str) -> bool:
        return any(message.id == message_id for message in self.messages)

    async def receive(self, record: dict[str, Any], *, token: int | None = None) -> bool:
        """
        Merge a pushed new-message event into the list.

        Args:
            record: Inserted row as delivered by the realtime stream
            token: Conversation the subscription was opened for

        Returns:
            True if the message was appended
        """
        token = self._token if token is None else token
        if not self._is_current(token) or self.kind is None:
            return False
        message = self._decode(record)
        if message is None or not self._belongs_here(message):
            return False
        if self._contains(message.id):
            duplicate_events_total.inc()
            return False

        kind = (
            AttachmentKind.MESSAGE if isinstance(message, MessageRead) else AttachmentKind.DIRECT_MESSAGE
        )
        try:
            [message] = await self._with_authors([message])
            attachments = await self.backend.fetch_attachments([message.id], kind)
        except BackendError:
            logger.warning(
                "Could not resolve details for message %s",
                message.id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            attachments = []
        if not self._is_current(token):
            return False
        [message] = self._attach([message], attachments, kind)
        appended = self._append(message)
        if appended and isinstance(message, DirectMessageRead) and message.receiver_id == self.user_id:
            await self._mark_read(token)
        if appended and self.on_update is not None:
            await self.on_update()
        return appended

    def _append(self, message: ViewMessage) -> bool:
        if self._contains(message.id):
            duplicate_events_total.inc()
            return False
        self.messages.append(message)
        parent = message.parent_message_id
        if parent is not None and self._contains(parent):
            self.reply_counts[parent] = self.reply_counts.get(parent, 0) + 1
        self._recompute_mentions()
        return True

    # Mentions of me

    def _mentions_me(self, message: ViewMessage, my_ids: set[str]) -> bool:
        if message.author_id == self.user_id:
            return False
        if mentions_user(message.content, self.username):
            return True
        return message.parent_message_id is not None and message.parent_message_id in my_ids

    def _recompute_mentions(self) -> None:
        my_ids = {message.id for message in self.messages if message.author_id == self.user_id}
        self.mention_count = sum(1 for message in self.messages if self._mentions_me(message, my_ids))

    def toggle_mentions_only(self) -> bool:
        self.show_mentions_only = not self.show_mentions_only
        return self.show_mentions_only

    @property
    def visible_messages(self) -> list[ViewMessage]:
        if not self.show_mentions_only:
            return list(self.messages)
        my_ids = {message.id for message in self.messages if message.author_id == self.user_id}
        return [message for message in self.messages if self._mentions_me(message, my_ids)]

    def reply_count(self, message_id: str) -> int:
        return self.reply_counts.get(message_id, 0)

    def is_pinned(self, message_id: str) -> bool:
        return message_id in self.pinned_ids

    # Compose

    def update_draft(self, text: str, caret: int | None = None) -> None:
        self.draft = text
        self.composer.update(text, caret)

    def commit_mention(self) -> bool:
        """Insert the highlighted mention candidate into the draft."""

        text = self.composer.commit()
        if text is None:
            return False
        self.draft = text
        return True

    def start_reply(self, message_id: str) -> None:
        """Reply to ``message_id``: remember the parent and prefill an @mention of its author."""

        message = self._find(message_id)
        if message is None:
            raise MessageValidationError("Message not found")
        username = message.author.username if message.author is not None else None
        self.reply_to = message.id
        self.update_draft(f"@{username} " if username else "")

    def cancel_reply(self) -> None:
        self.reply_to = None
        self.update_draft("")

    def _find(self, message_id: str) -> ViewMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def _require_open(self) -> ConversationKind:
        if self.kind is None or self.state is not ViewState.READY:
            raise MessageValidationError("No conversation is open")
        return self.kind

    async def send(
        self, content: str | None = None, files: Sequence[SelectedFile] = ()
    ) -> ViewMessage | None:
        """
        Send the draft (or ``content``) with optional attachments.

        Returns ``None`` without doing anything while a previous send is still in
        flight.

        Raises:
            MessageValidationError: Empty or oversized content
            AttachmentRejected: A selected file is not allowed
            PermissionDenied: The actor may not write in this channel
            UploadFailed: An upload failed and the batch was rolled back
            BackendError: The platform rejected the message
        """
        if self.sending:
            return None
        kind = self._require_open()
        text = self.draft if content is None else content
        try:
            payload = MessageCreate(
                content=text,
                parent_message_id=self.reply_to,
                has_attachments=bool(files),
                max_length=self.settings.chat_message_max_length,
            )
        except ValidationError as exc:
            raise MessageValidationError(_first_error(exc)) from None
        accepted = self.uploads.require_acceptable(files)

        self.sending = True
        token = self._token
        try:
            if kind is ConversationKind.CHANNEL:
                if self.channel is None:
                    raise MessageValidationError("No conversation is open")
                if not can_write(self.channel, self.global_rank):
                    raise PermissionDenied(write_denied_notice(self.channel))
                channel_id = self.channel.id

                async def _create() -> ViewMessage:
                    return await self.backend.insert_message(
                        channel_id=channel_id,
                        user_id=self.user_id,
                        content=payload.content,
                        parent_message_id=payload.parent_message_id,
                    )

                attachment_kind = AttachmentKind.MESSAGE
            else:
                if self.friend_id is None:
                    raise MessageValidationError("No conversation is open")
                friend_id = self.friend_id

                async def _create() -> ViewMessage:
                    return await self.backend.insert_direct_message(
                        sender_id=self.user_id,
                        receiver_id=friend_id,
                        content=payload.content,
                        parent_message_id=payload.parent_message_id,
                    )

                attachment_kind = AttachmentKind.DIRECT_MESSAGE

            row, attachments = await self.uploads.send_with_attachments(
                accepted, self.user_id, _create, attachment_kind
            )
            messages_sent_total.inc(kind=kind.value)
            if kind is ConversationKind.CHANNEL:
                await self._record_mentions(row)
        except (PermissionDenied, UploadFailed, BackendError) as exc:
            if token == self._token:
                self.error = str(exc)
            raise
        finally:
            self.sending = False

        author = self._ranked(row.author) if row.author is not None else self._my_author()
        attachments = [self._with_url(attachment) for attachment in attachments]
        row = row.model_copy(update={"attachments": attachments, "author": author})
        if token == self._token:
            self._append(row)
            self.reply_to = None
            self.update_draft("")
        return row

    async def _record_mentions(self, row: ViewMessage) -> None:
        mentions = extract_mentions(row.content, self.members)
        if not mentions:
            return
        records = [
            MentionRecord(
                mentioned_user_id=mention.user_id,
                mentioning_user_id=self.user_id,
                message_id=row.id,
            )
            for mention in mentions
        ]
        try:
            await self.backend.insert_mentions(records)
        except BackendError:
            logger.warning(
                "Could not record %d mention(s) for message %s",
                len(records),
                row.id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

    # Edit and delete

    def _replace(self, updated: ViewMessage) -> None:
        for index, message in enumerate(self.messages):
            if message.id == updated.id:
                self.messages[index] = updated
                return

    def _require_own(self, message_id: str, action: str) -> ViewMessage:
        message = self._find(message_id)
        if message is None:
            raise MessageValidationError("Message not found")
        if message.author_id != self.user_id:
            raise PermissionDenied(f"You can only {action} your own messages")
        return message

    async def edit(self, message_id: str, content: str) -> ViewMessage:
        """Edit one of my messages, optimistically; the previous content is restored on failure."""

        kind = self._require_open()
        previous = self._require_own(message_id, "edit")
        try:
            payload = MessageUpdate(content=content, max_length=self.settings.chat_message_max_length)
        except ValidationError as exc:
            raise MessageValidationError(_first_error(exc)) from None

        token = self._token
        self.edit_drafts[message_id] = content
        self._replace(
            previous.model_copy(
                update={"content": payload.content, "edited_at": datetime.now(timezone.utc)}
            )
        )
        self._recompute_mentions()
        try:
            if kind is ConversationKind.CHANNEL:
                confirmed: ViewMessage = await self.backend.update_message(message_id, payload.content)
            else:
                confirmed = await self.backend.update_direct_message(message_id, payload.content)
        except BackendError as exc:
            if token == self._token:
                self._replace(previous)
                self._recompute_mentions()
                self.error = f"Failed to edit message: {exc.message}"
            raise

        confirmed = confirmed.model_copy(
            update={"author": previous.author or confirmed.author, "attachments": previous.attachments}
        )
        if token == self._token:
            self.edit_drafts.pop(message_id, None)
            self._replace(confirmed)
            self._recompute_mentions()
        return confirmed

    async def delete(self, message_id: str, *, confirmed: bool = False) -> None:
        """Delete one of my messages. Requires explicit confirmation."""

        if not confirmed:
            raise ConfirmationRequired("Deleting a message must be confirmed")
        kind = self._require_open()
        message = self._require_own(message_id, "delete")

        token = self._token
        index = self.messages.index(message)
        self.messages.pop(index)
        self._recompute_mentions()
        try:
            if kind is ConversationKind.CHANNEL:
                await self.backend.delete_message(message_id)
            else:
                await self.backend.delete_direct_message(message_id)
        except BackendError as exc:
            if token == self._token and not self._contains(message_id):
                self.messages.insert(min(index, len(self.messages)), message)
                self._recompute_mentions()
                self.error = f"Failed to delete message: {exc.message}"
            raise

        if token != self._token:
            return
        self.pinned_ids.discard(message_id)
        self.pins = [pin for pin in self.pins if pin.message_id != message_id]
        self.reply_counts.pop(message_id, None)
        parent = message.parent_message_id
        if parent is not None and self.reply_counts.get(parent):
            self.reply_counts[parent] -= 1
            if not self.reply_counts[parent]:
                del self.reply_counts[parent]

    # Pin actions

    async def toggle_pin(self, message_id: str) -> bool:
        """
        Pin or unpin ``message_id`` and reload the pinned set.

        Returns:
            Whether the message is pinned after the reload
        """
        if self._require_open() is not ConversationKind.CHANNEL or self.channel is None:
            raise PermissionDenied("Messages can only be pinned in channels")
        if not can_pin_messages(self.global_rank, self.settings.pin_min_power_level):
            raise PermissionDenied("You do not have permission to pin messages")
        if self.pin_in_flight:
            return self.is_pinned(message_id)

        channel = self.channel
        token = self._token
        self.pin_in_flight = True
        try:
            if message_id in self.pinned_ids:
                await self.backend.unpin_message(message_id=message_id, channel_id=channel.id)
            else:
                await self.backend.pin_message(
                    message_id=message_id,
                    channel_id=channel.id,
                    server_id=channel.server_id,
                    pinned_by=self.user_id,
                )
            pins = await self._load_pins(channel.id)
        except BackendError as exc:
            if token == self._token:
                self.error = f"Failed to update pins: {exc.message}"
            raise
        finally:
            self.pin_in_flight = False
        if self._is_current(token):
            self._apply_pins(pins)
        return any(pin.message_id == message_id for pin in pins)

    # Errors and snapshots

    def dismiss_error(self) -> None:
        self.error = None

    @staticmethod
    def _render(message: ViewMessage) -> dict[str, Any]:
        segments = [
            {"text": segment.text, "mention": segment.username} for segment in split_mentions(message.content)
        ]
        return {**message.model_dump(mode="json"), "segments": segments}

    def snapshot(self) -> dict[str, Any]:
        """Serializable view state pushed to the client."""

        return {
            "state": self.state.value,
            "kind": self.kind.value if self.kind is not None else None,
            "channel_id": self.channel.id if self.channel is not None else None,
            "friend_id": self.friend_id,
            "messages": [self._render(message) for message in self.visible_messages],
            "pinned_ids": sorted(self.pinned_ids),
            "pinned": [pin.model_dump(mode="json") for pin in self.pins],
            "reply_counts": dict(self.reply_counts),
            "mention_count": self.mention_count,
            "show_mentions_only": self.show_mentions_only,
            "draft": self.draft,
            "caret": self.composer.caret,
            "mention_picker": {
                "composing": self.composer.composing,
                "term": self.composer.term,
                "selected": self.composer.selected,
                "candidates": [
                    {
                        **member.model_dump(mode="json"),
                        "rank": effective_display_rank(member.global_rank, member.role).model_dump(),
                    }
                    for member in self.composer.candidates
                ],
            },
            "reply_to": self.reply_to,
            "can_write": self.can_write,
            "write_notice": self.write_notice,
            "sending": self.sending,
            "error": self.error,
        }


__all__ = [
    "AttachmentRejected",
    "ConfirmationRequired",
    "ConversationView",
    "MessageValidationError",
    "PermissionDenied",
    "UploadFailed",
]
