"""Presence and connection registry.

Maps each online user to their live real-time connections. State is held in
memory by this process only and is rebuilt as clients reconnect.
"""

import logging
import threading
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, NamedTuple, Optional
from uuid import uuid4

from chatrelay.config import PRESENCE_SHARDS

logger = logging.getLogger(__name__)


class ConnectionTransport(ABC):
    """The socket behind a connection."""

    @abstractmethod
    async def send_json(self, payload: Dict[str, Any]) -> None:
        """Push one frame. Raises if the transport is gone."""

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        """Close the underlying socket."""


@dataclass
class Connection:
    connection_id: str
    user_id: str
    transport: ConnectionTransport
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed: bool = False

    async def push(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("connection closed")
        await self.transport.send_json(payload)


class Registration(NamedTuple):
    connection: Connection
    came_online: bool


class Unregistration(NamedTuple):
    user_id: Optional[str]
    went_offline: bool


class PresenceRegistry:
    """Concurrency-safe map of user id to live connections.

    Each user's connection set is an immutable frozenset swapped in under a
    lock picked by hashing the user id, so readers always see a complete set
    and writers only contend with writers for users in the same shard.
    """

    def __init__(self, shards: int = PRESENCE_SHARDS):
        if shards < 1:
            raise ValueError("shards must be at least 1")
        self._locks = [threading.Lock() for _ in range(shards)]
        self._by_user: Dict[str, FrozenSet[str]] = {}
        self._connections: Dict[str, Connection] = {}

    def _lock_for(self, user_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(user_id.encode("utf-8")) % len(self._locks)]

    def register(self, user_id: str, transport: ConnectionTransport) -> Registration:
        """Track a new connection; ``came_online`` marks the user's first one."""
        connection = Connection(
            connection_id=uuid4().hex, user_id=user_id, transport=transport
        )
        with self._lock_for(user_id):
            current = self._by_user.get(user_id, frozenset())
            self._connections[connection.connection_id] = connection
            self._by_user[user_id] = current | {connection.connection_id}
        came_online = not current
        if came_online:
            logger.info("User %s came online", user_id)
        logger.debug(
            "Registered connection %s for user %s", connection.connection_id, user_id
        )
        return Registration(connection, came_online)

    def unregister(self, connection_id: str) -> Unregistration:
        """Forget a connection. Unknown or already-removed ids are a no-op."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return Unregistration(None, False)

        user_id = connection.user_id
        with self._lock_for(user_id):
            if self._connections.pop(connection_id, None) is None:
                return Unregistration(None, False)
            remaining = self._by_user.get(user_id, frozenset()) - {connection_id}
            if remaining:
                self._by_user[user_id] = remaining
            else:
                self._by_user.pop(user_id, None)
        connection.closed = True

        went_offline = not remaining
        if went_offline:
            logger.info("User %s went offline", user_id)
        logger.debug("Unregistered connection %s for user %s", connection_id, user_id)
        return Unregistration(user_id, went_offline)

    def connections_for(self, user_id: str) -> FrozenSet[str]:
        """Snapshot of the user's connection ids; empty means offline."""
        return self._by_user.get(user_id, frozenset())

    def live_connections(self, user_id: str) -> List[Connection]:
        """Connection objects for a user, from one snapshot."""
        connections = []
        for connection_id in sorted(self.connections_for(user_id)):
            connection = self._connections.get(connection_id)
            if connection is not None:
                connections.append(connection)
        return connections

    def connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def is_online(self, user_id: str) -> bool:
        return bool(self.connections_for(user_id))

    def online_users(self) -> List[str]:
        return sorted(self._by_user.keys())

    def __len__(self) -> int:
        return len(self._connections)
