# Real-time connection handling
from .registry import (
    Connection,
    ConnectionTransport,
    PresenceRegistry,
    Registration,
    Unregistration,
)

# One registry per process, shared by every request and socket
presence_registry = PresenceRegistry()

__all__ = [
    "Connection",
    "ConnectionTransport",
    "PresenceRegistry",
    "Registration",
    "Unregistration",
    "presence_registry",
]
