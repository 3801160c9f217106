"""Access to the managed backend platform."""

from .base import BackendError, ChatBackend, EventHandler, RealtimeSubscription
from .client import PlatformClient

__all__ = ["BackendError", "ChatBackend", "EventHandler", "PlatformClient", "RealtimeSubscription"]
