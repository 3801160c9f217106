"""Metric definitions for the chat core and gateway."""

from __future__ import annotations

from .registry import registry


platform_requests_total = registry.counter(
    "legion_platform_requests_total",
    "Requests made to the backend platform by operation and outcome.",
    label_names=("operation", "outcome"),
)

realtime_events_total = registry.counter(
    "legion_realtime_events_total",
    "Realtime change events received from the platform.",
    label_names=("table", "direction"),
)

realtime_reconnects_total = registry.counter(
    "legion_realtime_reconnects_total",
    "Attempts to restore the realtime connection by outcome.",
    label_names=("outcome",),
)

realtime_subscriptions = registry.gauge(
    "legion_realtime_subscriptions",
    "Realtime topics currently joined.",
    label_names=("table",),
)

messages_sent_total = registry.counter(
    "legion_messages_sent_total",
    "Messages sent from conversation views.",
    label_names=("kind",),
)

duplicate_events_total = registry.counter(
    "legion_duplicate_events_total",
    "Pushed messages dropped because the id was already in the view.",
)

stale_results_total = registry.counter(
    "legion_stale_results_total",
    "Async results discarded because the conversation changed while they were in flight.",
)

upload_rollbacks_total = registry.counter(
    "legion_upload_rollbacks_total",
    "Attachment batches whose uploaded objects were deleted after a failure.",
    label_names=("stage",),
)

conversation_connections = registry.gauge(
    "legion_conversation_connections",
    "Conversation websockets open on the gateway.",
)
