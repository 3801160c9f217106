"""WebSocket endpoint driving a conversation view for one client."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from pydantic import ValidationError

from legion.config import get_settings
from legion.platform import BackendError, ChatBackend
from legion.schemas import ChannelRead, MemberRead
from legion.services.attachments import AttachmentRejected, SelectedFile, UploadFailed
from legion.services.conversation import ConversationView, MessageValidationError
from legion.services.permissions import PermissionDenied
from legion.services.sessions import conversation_sessions

from .deps import BackendFactory, get_backend_factory, get_user_id_from_token

router = APIRouter(prefix="/ws", tags=["ws"])

logger = logging.getLogger(__name__)


class ActionError(Exception):
    """Raised for malformed client actions."""


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON unless the socket has gone away. Returns whether it was sent."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug("Failed to send websocket message: %s", exc)
        return False


async def _send_error(websocket: WebSocket, detail: str, kind: str) -> None:
    await safe_send_json(websocket, {"type": "error", "kind": kind, "detail": detail})


def _resolve_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


def _require(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ActionError(f"'{key}' is required")
    return value


def _decode_files(raw_files: Any) -> list[SelectedFile]:
    if raw_files in (None, []):
        return []
    if not isinstance(raw_files, list):
        raise ActionError("'files' must be a list")
    files: list[SelectedFile] = []
    for item in raw_files:
        if not isinstance(item, dict):
            raise ActionError("Each file must be an object")
        try:
            data = base64.b64decode(_require(item, "data"), validate=True)
        except (binascii.Error, ValueError):
            raise ActionError("File data must be base64 encoded") from None
        files.append(
            SelectedFile(name=_require(item, "name"), data=data, content_type=item.get("content_type"))
        )
    return files


async def _apply_action(view: ConversationView, action: str, payload: dict[str, Any]) -> None:
    if action == "open_channel":
        try:
            channel = ChannelRead.model_validate(payload.get("channel"))
            members = [MemberRead.model_validate(item) for item in payload.get("members") or []]
        except ValidationError as exc:
            raise ActionError("Invalid channel payload") from exc
        view.set_members(members)
        await view.open_channel(channel)
    elif action == "open_direct":
        await view.open_direct(_require(payload, "friend_id"))
    elif action == "draft":
        text = payload.get("text", "")
        caret = payload.get("caret")
        if not isinstance(text, str) or (caret is not None and not isinstance(caret, int)):
            raise ActionError("Draft payload must include text and an integer caret")
        view.update_draft(text, caret)
    elif action == "mention_move":
        if payload.get("direction") == "up":
            view.composer.move_up()
        else:
            view.composer.move_down()
    elif action == "mention_commit":
        view.commit_mention()
    elif action == "mention_close":
        view.composer.close()
    elif action == "send":
        content = payload.get("content")
        if content is not None and not isinstance(content, str):
            raise ActionError("'content' must be a string")
        await view.send(content, _decode_files(payload.get("files")))
    elif action == "edit":
        content = payload.get("content")
        if not isinstance(content, str):
            raise ActionError("'content' must be a string")
        await view.edit(_require(payload, "message_id"), content)
    elif action == "delete":
        await view.delete(_require(payload, "message_id"), confirmed=payload.get("confirmed") is True)
    elif action == "reply":
        view.start_reply(_require(payload, "message_id"))
    elif action == "cancel_reply":
        view.cancel_reply()
    elif action == "toggle_pin":
        await view.toggle_pin(_require(payload, "message_id"))
    elif action == "toggle_mentions":
        view.toggle_mentions_only()
    elif action == "dismiss_error":
        view.dismiss_error()
    else:
        raise ActionError("Unsupported action")


async def _load_identity(backend: ChatBackend, user_id: str) -> dict[str, Any]:
    profiles = await backend.fetch_profiles([user_id])
    for profile in profiles:
        if profile.id == user_id:
            return {
                "username": profile.username,
                "global_rank": profile.global_rank,
                "avatar_url": profile.avatar_url,
            }
    return {"username": "Unknown", "global_rank": None, "avatar_url": None}


@router.websocket("/conversation")
async def websocket_conversation(
    websocket: WebSocket,
    factory: BackendFactory = Depends(get_backend_factory),
) -> None:
    """Run a conversation view for the connected client and push its snapshots."""

    token = _resolve_token(websocket)
    if token is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return
    try:
        user_id = get_user_id_from_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return

    backend = factory(token)
    try:
        identity = await _load_identity(backend, user_id)
    except BackendError as exc:
        logger.warning("Could not load profile for %s: %s", user_id, exc.message)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Profile unavailable")
        return

    await websocket.accept()

    async def _push_snapshot() -> None:
        await safe_send_json(websocket, {"type": "snapshot", "view": view.snapshot()})

    view = ConversationView(
        backend,
        user_id=user_id,
        settings=get_settings(),
        on_update=_push_snapshot,
        **identity,
    )
    await conversation_sessions.connect(user_id, view)
    await _push_snapshot()

    try:
        while True:
            raw_message = await websocket.receive_text()
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                await _send_error(websocket, "Invalid message format", "validation")
                continue
            if not isinstance(payload, dict):
                await _send_error(websocket, "Message payload must be a JSON object", "validation")
                continue

            action = payload.get("action")
            if action == "ping":
                await safe_send_json(websocket, {"type": "pong"})
                continue

            try:
                await _apply_action(view, str(action), payload)
            except (ActionError, MessageValidationError, AttachmentRejected) as exc:
                await _send_error(websocket, str(exc), "validation")
            except PermissionDenied as exc:
                await _send_error(websocket, str(exc), "forbidden")
            except (UploadFailed, BackendError) as exc:
                await _send_error(websocket, str(exc), "backend")
            await _push_snapshot()
    except WebSocketDisconnect:
        pass
    finally:
        await conversation_sessions.disconnect(user_id, view)
        close = getattr(backend, "aclose", None)
        if close is not None:
            await close()
