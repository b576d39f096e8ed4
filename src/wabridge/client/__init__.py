"""WhatsApp Web client interface and the default browser-backed implementation."""

from .base import (
    Authenticated,
    AuthFailed,
    ClientError,
    ClientFactory,
    Disconnected,
    EventListener,
    LifecycleEvent,
    LoadingProgress,
    MessagingClient,
    QrIssued,
    Ready,
    StateChanged,
)

__all__ = [
    "Authenticated",
    "AuthFailed",
    "ClientError",
    "ClientFactory",
    "Disconnected",
    "EventListener",
    "LifecycleEvent",
    "LoadingProgress",
    "MessagingClient",
    "QrIssued",
    "Ready",
    "StateChanged",
]
