from __future__ import annotations

import anyio
import pytest

from legion.models import ConversationKind, ViewState
from legion.platform import BackendError
from legion.schemas import AttachmentRead, ChannelRead
from legion.services.attachments import SelectedFile, UploadFailed
from legion.services.conversation import (
    ConfirmationRequired,
    ConversationView,
    MessageValidationError,
)
from legion.services.permissions import PermissionDenied

from conftest import wait_until

pytestmark = pytest.mark.anyio("asyncio")


async def test_open_channel_loads_history_in_order(view, fake_backend, channel):
    first = fake_backend.add_message("c1", "u2", "first")
    second = fake_backend.add_message("c1", "me", "second")
    fake_backend.add_message("c1", "u2", "reply", parent_message_id=second.id)
    fake_backend.add_message("other", "u2", "elsewhere")
    fake_backend.pins["c1"] = {first.id}

    await view.open_channel(channel)

    assert view.state is ViewState.READY
    assert [message.content for message in view.messages] == ["first", "second", "reply"]
    assert view.messages[0].author.username == "Bex"
    assert view.is_pinned(first.id)
    assert view.reply_count(second.id) == 1
    assert view.mention_count == 1
    assert [topic for topic, _, _ in fake_backend.active_subscriptions] == ["messages:c1", "pinned_messages:c1"]


async def test_switching_context_clears_and_keeps_one_subscription(view, fake_backend, channel):
    fake_backend.add_message("c1", "u2", "in general")
    fake_backend.add_message("c2", "u2", "in random")
    await view.open_channel(channel)

    await view.open_channel(ChannelRead(id="c2", name="random", server_id="s1"))

    assert [message.content for message in view.messages] == ["in random"]
    assert [topic for topic, _, _ in fake_backend.active_subscriptions] == ["messages:c2", "pinned_messages:c2"]


async def test_late_response_from_previous_context_is_discarded(view, fake_backend, channel):
    fake_backend.add_message("c1", "u2", "stale")
    fake_backend.add_message("c2", "u2", "fresh")
    gate = anyio.Event()
    fake_backend.gates["fetch_messages"] = gate

    async with anyio.create_task_group() as tg:
        tg.start_soon(view.open_channel, channel)
        await wait_until(lambda: "fetch_messages" in fake_backend.calls)

        await view.open_channel(ChannelRead(id="c2", name="random", server_id="s1"))
        gate.set()

    assert view.channel.id == "c2"
    assert [message.content for message in view.messages] == ["fresh"]
    assert view.state is ViewState.READY


async def test_rapid_switch_during_subscribe_leaves_one_subscription(view, fake_backend, channel):
    gate = anyio.Event()
    fake_backend.gates["subscribe"] = gate

    async with anyio.create_task_group() as tg:
        tg.start_soon(view.open_channel, channel)
        await wait_until(lambda: "subscribe" in fake_backend.calls)

        await view.open_channel(ChannelRead(id="c2", name="random", server_id="s1"))
        gate.set()

    assert [topic for topic, _, _ in fake_backend.active_subscriptions] == ["messages:c2", "pinned_messages:c2"]
    assert view.subscription.topic == "messages:c2"
    assert view.pin_subscription.topic == "pinned_messages:c2"


async def test_same_push_event_twice_yields_one_entry(view, fake_backend, channel):
    await view.open_channel(channel)
    record = fake_backend.message_record("c1", "u2", "hello", id="m-push")

    await fake_backend.push("messages", record)
    await fake_backend.push("messages", record)

    assert [message.id for message in view.messages] == ["m-push"]
    assert view.messages[0].author.username == "Bex"


async def test_push_for_other_channel_is_ignored(view, fake_backend, channel):
    await view.open_channel(channel)

    appended = await view.receive(fake_backend.message_record("c9", "u2", "elsewhere"))

    assert appended is False
    assert view.messages == []


async def test_event_from_previous_subscription_is_stale(view, fake_backend, channel):
    await view.open_channel(channel)
    old_token = view._token
    await view.open_channel(ChannelRead(id="c2", name="random", server_id="s1"))

    appended = await view.receive(fake_backend.message_record("c1", "u2", "late"), token=old_token)

    assert appended is False


async def test_own_send_then_push_echo_is_not_duplicated(view, fake_backend, channel):
    await view.open_channel(channel)

    sent = await view.send("hi all")
    await fake_backend.push("messages", sent.model_dump(mode="json", exclude={"author", "attachments"}))

    assert [message.id for message in view.messages] == [sent.id]
    assert view.messages[0].author.username == "Ari"


async def test_send_records_mentions_and_clears_reply(view, fake_backend, channel):
    parent = fake_backend.add_message("c1", "u2", "question")
    await view.open_channel(channel)

    view.start_reply(parent.id)
    assert view.draft == "@Bex "
    view.update_draft(view.draft + "answer for @Cato and @Bex")

    sent = await view.send()

    assert sent.parent_message_id == parent.id
    assert view.reply_to is None
    assert view.draft == ""
    assert view.reply_count(parent.id) == 1
    assert [record.mentioned_user_id for record in fake_backend.mentions] == ["u2", "u3", "u2"]


async def test_cancel_reply_clears_parent_and_prefill(view, fake_backend, channel):
    parent = fake_backend.add_message("c1", "u2", "question")
    await view.open_channel(channel)
    view.start_reply(parent.id)

    view.cancel_reply()

    assert view.reply_to is None
    assert view.draft == ""


async def test_send_validation_happens_before_backend(view, fake_backend, channel, settings):
    await view.open_channel(channel)
    calls_before = list(fake_backend.calls)

    with pytest.raises(MessageValidationError, match="empty"):
        await view.send("   ")
    with pytest.raises(MessageValidationError, match="exceed"):
        await view.send("x" * (settings.chat_message_max_length + 1))

    assert fake_backend.calls == calls_before
    assert view.error is None


async def test_send_refused_in_restricted_channel(fake_backend, settings, members):
    restricted = ChannelRead(id="c1", name="announcements", server_id="s1", allowed_writer_roles=["admin"])
    view = ConversationView(fake_backend, user_id="u2", username="Bex", global_rank="user", settings=settings)
    await view.open_channel(restricted)

    assert view.can_write is False
    assert view.write_notice.endswith("#announcements")
    with pytest.raises(PermissionDenied):
        await view.send("hello")
    assert "insert_message" not in fake_backend.calls
    assert view.sending is False
    assert view.snapshot()["can_write"] is False


async def test_double_submit_is_ignored_while_in_flight(view, fake_backend, channel):
    await view.open_channel(channel)
    gate = anyio.Event()
    fake_backend.gates["insert_message"] = gate
    results = []

    async def _send() -> None:
        results.append(await view.send("once"))

    async with anyio.create_task_group() as tg:
        tg.start_soon(_send)
        await wait_until(lambda: view.sending)
        assert await view.send("twice") is None
        gate.set()

    assert fake_backend.calls.count("insert_message") == 1
    assert view.sending is False
    assert [message.content for message in view.messages] == ["once"]


async def test_in_flight_flag_cleared_after_backend_failure(view, fake_backend, channel):
    await view.open_channel(channel)
    fake_backend.failures["insert_message"] = BackendError("row-level security", status_code=403)

    with pytest.raises(BackendError):
        await view.send("hello")

    assert view.sending is False
    assert view.error == "row-level security"
    view.dismiss_error()
    assert view.error is None


async def test_send_with_attachments_links_rows(view, fake_backend, channel):
    await view.open_channel(channel)
    files = [SelectedFile("notes.txt", b"abc", "text/plain"), SelectedFile("pic.png", b"img", "image/png")]

    sent = await view.send("", files)

    assert [item.file_name for item in sent.attachments] == ["notes.txt", "pic.png"]
    assert all(item.message_id == sent.id for item in fake_backend.attachments)
    assert len(fake_backend.storage) == 2


async def test_failed_upload_sends_nothing(view, fake_backend, channel):
    await view.open_channel(channel)
    fake_backend.fail_upload_on_call = 2
    files = [SelectedFile(f"f{i}.txt", b"data") for i in range(3)]

    with pytest.raises(UploadFailed):
        await view.send("with files", files)

    assert fake_backend.storage == {}
    assert fake_backend.messages == {}
    assert fake_backend.attachments == []
    assert view.messages == []


async def test_edit_is_optimistic_and_confirmed(view, fake_backend, channel):
    mine = fake_backend.add_message("c1", "me", "typo")
    await view.open_channel(channel)

    edited = await view.edit(mine.id, "fixed")

    assert edited.edited_at is not None
    assert view.messages[0].content == "fixed"
    assert fake_backend.messages[mine.id].content == "fixed"
    assert view.edit_drafts == {}


async def test_edit_failure_restores_and_keeps_draft(view, fake_backend, channel):
    mine = fake_backend.add_message("c1", "me", "original")
    await view.open_channel(channel)
    fake_backend.failures["update_message"] = BackendError("timeout")

    with pytest.raises(BackendError):
        await view.edit(mine.id, "changed")

    assert view.messages[0].content == "original"
    assert view.edit_drafts[mine.id] == "changed"
    assert view.error.startswith("Failed to edit message")


async def test_cannot_edit_or_delete_others_messages(view, fake_backend, channel):
    theirs = fake_backend.add_message("c1", "u2", "not yours")
    await view.open_channel(channel)

    with pytest.raises(PermissionDenied):
        await view.edit(theirs.id, "mine now")
    with pytest.raises(PermissionDenied):
        await view.delete(theirs.id, confirmed=True)


async def test_delete_requires_confirmation(view, fake_backend, channel):
    mine = fake_backend.add_message("c1", "me", "bye")
    await view.open_channel(channel)

    with pytest.raises(ConfirmationRequired):
        await view.delete(mine.id)

    assert "delete_message" not in fake_backend.calls
    await view.delete(mine.id, confirmed=True)
    assert view.messages == []
    assert mine.id not in fake_backend.messages


async def test_delete_failure_reinserts_at_position(view, fake_backend, channel):
    fake_backend.add_message("c1", "u2", "before")
    mine = fake_backend.add_message("c1", "me", "middle")
    fake_backend.add_message("c1", "u2", "after")
    await view.open_channel(channel)
    fake_backend.failures["delete_message"] = BackendError("forbidden", status_code=403)

    with pytest.raises(BackendError):
        await view.delete(mine.id, confirmed=True)

    assert [message.content for message in view.messages] == ["before", "middle", "after"]


async def test_mentions_of_me_count_and_filter(view, fake_backend, channel):
    mine = fake_backend.add_message("c1", "me", "my post @Ari")
    fake_backend.add_message("c1", "u2", "hey @Ari")
    fake_backend.add_message("c1", "u3", "agreed", parent_message_id=mine.id)
    fake_backend.add_message("c1", "u2", "unrelated")
    await view.open_channel(channel)

    assert view.mention_count == 2
    assert view.toggle_mentions_only() is True
    assert [message.content for message in view.visible_messages] == ["hey @Ari", "agreed"]
    assert len(view.messages) == 4

    await fake_backend.push("messages", fake_backend.message_record("c1", "u3", "ping @Ari"))
    assert view.mention_count == 3


async def test_unpin_reloads_pinned_set(view, fake_backend, channel):
    message = fake_backend.add_message("c1", "u2", "important", message_id="m1")
    fake_backend.pins["c1"] = {message.id}
    await view.open_channel(channel)
    assert "m1" in view.pinned_ids

    pinned = await view.toggle_pin("m1")

    assert pinned is False
    assert "unpin_message" in fake_backend.calls
    assert fake_backend.calls[-1] == "fetch_pinned_messages"
    assert "m1" not in view.pinned_ids


async def test_pin_waits_for_confirmation(view, fake_backend, channel):
    fake_backend.add_message("c1", "u2", "important", message_id="m1")
    await view.open_channel(channel)
    fake_backend.failures["pin_message"] = BackendError("not a moderator", status_code=403)

    with pytest.raises(BackendError):
        await view.toggle_pin("m1")

    assert "m1" not in view.pinned_ids
    assert view.pin_in_flight is False


async def test_pin_refused_for_low_rank(fake_backend, settings, channel):
    view = ConversationView(fake_backend, user_id="u2", username="Bex", global_rank="user", settings=settings)
    await view.open_channel(channel)

    with pytest.raises(PermissionDenied):
        await view.toggle_pin("m1")


async def test_direct_conversation_marks_read_and_merges(view, fake_backend):
    fake_backend.add_direct_message("u2", "me", "hi there")
    fake_backend.add_direct_message("me", "u2", "hello back", read=True)
    fake_backend.add_direct_message("u3", "me", "other friend")

    await view.open_direct("u2")

    assert view.kind is ConversationKind.DIRECT
    assert [message.content for message in view.messages] == ["hi there", "hello back"]
    assert all(message.read for message in view.messages)
    assert "mark_direct_messages_read" in fake_backend.calls

    record = {
        "id": "dm-push",
        "content": "again",
        "sender_id": "u2",
        "receiver_id": "me",
        "created_at": fake_backend.tick().isoformat(),
    }
    await fake_backend.push("direct_messages", record)
    await fake_backend.push("direct_messages", record)
    await fake_backend.push("direct_messages", {**record, "id": "dm-other", "sender_id": "u3"})

    assert [message.id for message in view.messages][-1] == "dm-push"
    assert len(view.messages) == 3


async def test_direct_send_uses_direct_rows(view, fake_backend):
    await view.open_direct("u2")

    sent = await view.send("private", [SelectedFile("a.txt", b"1")])

    assert sent.receiver_id == "u2"
    assert fake_backend.attachments[0].direct_message_id == sent.id
    assert fake_backend.mentions == []


async def test_load_failure_sets_error(view, fake_backend, channel):
    fake_backend.failures["fetch_messages"] = BackendError("network down")

    with pytest.raises(BackendError):
        await view.open_channel(channel)

    assert view.error == "Failed to load messages: network down"
    assert view.state is ViewState.READY


async def test_close_tears_down_subscription(view, fake_backend, channel):
    await view.open_channel(channel)

    await view.close()

    assert fake_backend.active_subscriptions == []
    assert view.state is ViewState.IDLE


async def test_snapshot_shape(view, fake_backend, channel):
    fake_backend.add_message("c1", "u2", "hello")
    await view.open_channel(channel)
    view.update_draft("hey @Ca")

    snapshot = view.snapshot()

    assert snapshot["state"] == "ready"
    assert snapshot["channel_id"] == "c1"
    assert snapshot["messages"][0]["content"] == "hello"
    assert snapshot["mention_picker"]["composing"] is True
    assert [item["username"] for item in snapshot["mention_picker"]["candidates"]] == ["Cato"]

    assert view.commit_mention() is True
    assert view.draft == "hey @Cato "


async def test_push_during_history_load_is_kept(view, fake_backend, channel):
    older = fake_backend.add_message("c1", "u2", "older", message_id="m1")
    gate = anyio.Event()
    fake_backend.gates["fetch_attachments"] = gate

    async with anyio.create_task_group() as tg:
        tg.start_soon(view.open_channel, channel)
        await wait_until(lambda: "fetch_attachments" in fake_backend.calls)

        await fake_backend.push("messages", fake_backend.message_record("c1", "u3", "live", id="m2"))
        await fake_backend.push("messages", older.model_dump(mode="json", exclude={"author", "attachments"}))
        gate.set()

    assert view.state is ViewState.READY
    assert [message.id for message in view.messages] == ["m1", "m2"]
    assert view.messages[1].author.username == "Cato"


async def test_pin_change_from_another_moderator_reloads_pins(view, fake_backend, channel):
    fake_backend.add_message("c1", "u2", "important", message_id="m1")
    await view.open_channel(channel)
    assert view.snapshot()["pinned"] == []

    fake_backend.pins["c1"] = {"m1"}
    fake_backend.pinned_by["m1"] = "u3"
    await fake_backend.push("pinned_messages", {"message_id": "m1", "channel_id": "c1", "pinned_by": "u3"})

    assert view.is_pinned("m1")
    [pinned] = view.snapshot()["pinned"]
    assert pinned["pinned_by"] == "u3"
    assert pinned["message"]["content"] == "important"
    assert pinned["message"]["author"]["username"] == "Bex"

    fake_backend.pins["c1"].clear()
    await fake_backend.push("pinned_messages", {"message_id": "m1"})

    assert not view.is_pinned("m1")
    assert view.snapshot()["pinned"] == []


async def test_pin_change_after_switching_channel_is_ignored(view, fake_backend, channel):
    await view.open_channel(channel)
    [(_, _, pin_handler)] = [entry for entry in fake_backend.active_subscriptions if entry[1] == "pinned_messages"]
    await view.open_direct("u2")
    calls = len(fake_backend.calls)

    await pin_handler({"message_id": "m1", "channel_id": "c1"})

    assert fake_backend.calls[calls:] == []
    assert view.pins == []


async def test_snapshot_decorates_authors_mentions_and_attachments(view, fake_backend, channel):
    message = fake_backend.add_message("c1", "u3", "thanks @Bex!")
    fake_backend.attachments.append(
        AttachmentRead(id="a1", storage_path="u3/x.png", file_name="x.png", message_id=message.id)
    )
    await view.open_channel(channel)
    view.update_draft("@B")

    snapshot = view.snapshot()

    [rendered] = snapshot["messages"]
    assert rendered["author"]["rank"]["label"] == "Role 2"
    assert rendered["segments"] == [
        {"text": "thanks ", "mention": None},
        {"text": "@Bex", "mention": "Bex"},
        {"text": "!", "mention": None},
    ]
    assert rendered["attachments"][0]["url"] == "https://files.example/u3/x.png"
    [candidate] = snapshot["mention_picker"]["candidates"]
    assert candidate["username"] == "Bex"
    assert candidate["rank"]["label"] == "Member"


async def test_sent_message_carries_my_rank_and_attachment_urls(view, fake_backend, channel):
    await view.open_channel(channel)

    sent = await view.send("notes", [SelectedFile("notes.txt", b"1")])

    assert sent.author.rank.label == "Role 1"
    assert sent.attachments[0].url == f"https://files.example/{sent.attachments[0].storage_path}"


async def test_send_without_open_channel_is_rejected(view):
    view.kind = ConversationKind.CHANNEL
    view.state = ViewState.READY

    with pytest.raises(MessageValidationError, match="No conversation is open"):
        await view.send("hello")

    assert view.sending is False
