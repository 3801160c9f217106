"""Client for the platform's realtime websocket (Phoenix channel protocol)."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from itertools import count
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from legion.monitoring.metrics import (
    realtime_events_total,
    realtime_reconnects_total,
    realtime_subscriptions,
)

from .base import EventHandler, RealtimeSubscription


logger = logging.getLogger(__name__)

_HEARTBEAT_TOPIC = "phoenix"
_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0
_CHANGE_TYPES = frozenset({"INSERT", "UPDATE", "DELETE"})


@dataclass(slots=True)
class _ChannelState:
    """Internal bookkeeping for a joined realtime topic."""

    topic: str
    table: str
    event: str
    handler: EventHandler
    join_payload: dict[str, Any] = field(default_factory=dict)

    def accepts(self, change_type: Any) -> bool:
        if self.event == "*":
            return change_type in _CHANGE_TYPES
        return change_type == self.event


class RealtimeClient:
    """Multiplexes postgres-change subscriptions over a single websocket.

    When the connection drops, the client reconnects with exponential backoff
    and joins every topic that is still subscribed again.
    """

    def __init__(
        self,
        url: str,
        *,
        access_token: str | None = None,
        heartbeat_interval: float = 25.0,
        schema: str = "public",
    ) -> None:
        self._url = url
        self._access_token = access_token
        self._heartbeat_interval = heartbeat_interval
        self._schema = schema
        self._socket: Any | None = None
        self._channels: dict[str, _ChannelState] = {}
        self._reader_task: asyncio.Task[Any] | None = None
        self._heartbeat_task: asyncio.Task[Any] | None = None
        self._recovery_task: asyncio.Task[Any] | None = None
        self._connect_lock = asyncio.Lock()
        self._refs = count(1)
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._socket is not None

    @property
    def recovering(self) -> bool:
        return self._recovery_task is not None and not self._recovery_task.done()

    async def connect(self) -> None:
        async with self._connect_lock:
            self._closing = False
            if self._socket is not None:
                return
            await self._open()

    async def _open(self) -> None:
        try:
            socket = await websockets.connect(self._url)
        except (OSError, WebSocketException):
            logger.exception("Failed to connect to realtime endpoint")
            raise
        self._socket = socket
        self._reader_task = asyncio.create_task(self._reader(socket), name="realtime-reader")
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat(), name="realtime-heartbeat")

    async def close(self) -> None:
        self._closing = True
        socket, self._socket = self._socket, None
        for task in (self._recovery_task, self._heartbeat_task, self._reader_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._recovery_task = None
        self._heartbeat_task = None
        self._reader_task = None
        for state in list(self._channels.values()):
            realtime_subscriptions.dec(table=state.table)
        self._channels.clear()
        if socket is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await socket.close()

    async def subscribe(
        self,
        topic: str,
        *,
        table: str,
        filter: str | None,
        handler: EventHandler,
        event: str = "INSERT",
    ) -> RealtimeSubscription:
        await self.connect()
        full_topic = f"realtime:{topic}"
        change: dict[str, Any] = {"event": event, "schema": self._schema, "table": table}
        if filter:
            change["filter"] = filter
        payload: dict[str, Any] = {"config": {"postgres_changes": [change]}}
        if self._access_token:
            payload["access_token"] = self._access_token

        self._channels[full_topic] = _ChannelState(
            topic=full_topic, table=table, event=event, handler=handler, join_payload=payload
        )
        realtime_subscriptions.inc(table=table)
        await self._send(full_topic, "phx_join", payload)

        async def _cleanup() -> None:
            state = self._channels.pop(full_topic, None)
            if state is None:
                return
            realtime_subscriptions.dec(table=state.table)
            try:
                await self._send(full_topic, "phx_leave", {})
            except (ConnectionClosed, OSError):
                logger.warning(
                    "Could not leave realtime topic %s",
                    full_topic,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )

        return RealtimeSubscription(full_topic, _cleanup)

    async def _send(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        if self._socket is None:
            raise ConnectionError("Realtime socket is not connected")
        message = {"topic": topic, "event": event, "payload": payload, "ref": str(next(self._refs))}
        await self._socket.send(json.dumps(message))

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if self._socket is None:
                continue
            try:
                await self._send(_HEARTBEAT_TOPIC, "heartbeat", {})
            except (ConnectionClosed, OSError):
                logger.warning("Realtime heartbeat failed", exc_info=logger.isEnabledFor(logging.DEBUG))

    async def _reader(self, socket: Any) -> None:
        try:
            async for raw in socket:
                await self._dispatch(raw)
        except ConnectionClosed:
            logger.info("Realtime connection closed")
        if self._socket is not socket:
            return
        self._socket = None
        if not self._closing:
            logger.warning("Realtime reader stopped; scheduling recovery")
            self._trigger_recovery()

    def _trigger_recovery(self) -> None:
        if self.recovering:
            return
        self._recovery_task = asyncio.create_task(self._recovery_runner(), name="realtime-recovery")

    async def _rejoin(self) -> None:
        for state in list(self._channels.values()):
            await self._send(state.topic, "phx_join", state.join_payload)

    async def _recovery_runner(self) -> None:
        attempt = 0
        while not self._closing:
            delay = min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY)
            if delay:
                await asyncio.sleep(delay)
            try:
                async with self._connect_lock:
                    if self._socket is None:
                        await self._open()
                    await self._rejoin()
            except (OSError, WebSocketException):
                attempt += 1
                self._socket = None
                realtime_reconnects_total.inc(outcome="failed")
                logger.warning("Realtime recovery attempt %d failed", attempt)
                continue
            realtime_reconnects_total.inc(outcome="ok")
            logger.info("Realtime connection restored; rejoined %d topic(s)", len(self._channels))
            break
        self._recovery_task = None

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Dropping malformed realtime frame")
            return
        if message.get("event") != "postgres_changes":
            return
        state = self._channels.get(message.get("topic", ""))
        if state is None:
            return
        data = (message.get("payload") or {}).get("data") or {}
        change_type = data.get("type")
        if not state.accepts(change_type):
            return
        record = data.get("old_record") if change_type == "DELETE" else data.get("record")
        if not isinstance(record, dict):
            return
        realtime_events_total.inc(table=state.table, direction="in")
        try:
            await state.handler(record)
        except Exception:  # pragma: no cover - handler failures must not kill the reader
            logger.exception("Realtime handler failed for topic %s", state.topic)
