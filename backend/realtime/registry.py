"""
Process-local index of live WebSocket connections.

This module provides:
- Connection: one live socket bound to a user and optionally an event room
- ConnectionRegistry: user -> connections and event -> connections maps
- Best-effort fan-out of a message to every connection in an event room

Architecture:
- Each consumer registers itself on accept and unregisters on close
- Messages are delivered with `channel_layer.send(channel_name, ...)`, so
  only sockets attached to this process are reached
- One registry instance is owned by the realtime AppConfig and injected
  into consumers; tests construct their own
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)

# Handler name on the consumer that forwards broadcasts to the socket
BROADCAST_HANDLER = "realtime.broadcast"


@dataclass(frozen=True)
class Connection:
    """A live transport session. Never persisted."""
    socket_id: str
    user_id: str
    event_id: Optional[str] = None


class ConnectionRegistry:
    """
    In-memory bidirectional index of live connections.

    HTTP views broadcast from worker threads while consumers mutate the maps
    from the event loop, so all map access goes through one lock. Sends
    happen on a snapshot, outside the lock.
    """

    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer
        self._lock = threading.Lock()
        self._by_user: Dict[str, Set[Connection]] = {}
        self._by_event: Dict[str, Set[Connection]] = {}

    @property
    def channel_layer(self):
        if self._channel_layer is None:
            self._channel_layer = get_channel_layer()
        return self._channel_layer

    # ---------------------- Mutation ----------------------

    def register(self, conn: Connection) -> None:
        with self._lock:
            self._by_user.setdefault(conn.user_id, set()).add(conn)
            if conn.event_id:
                self._by_event.setdefault(conn.event_id, set()).add(conn)
        logger.debug("Registered %s (user=%s event=%s)", conn.socket_id, conn.user_id, conn.event_id)

    def unregister(self, conn: Connection) -> None:
        """Remove a connection from both maps. Safe to call more than once."""
        with self._lock:
            self._discard(self._by_user, conn.user_id, conn)
            if conn.event_id:
                self._discard(self._by_event, conn.event_id, conn)
        logger.debug("Unregistered %s", conn.socket_id)

    @staticmethod
    def _discard(index: Dict[str, Set[Connection]], key: str, conn: Connection) -> None:
        bucket = index.get(key)
        if bucket is None:
            return
        bucket.discard(conn)
        if not bucket:
            del index[key]

    # ---------------------- Introspection ----------------------

    def connections_for_user(self, user_id: str) -> Set[Connection]:
        with self._lock:
            return set(self._by_user.get(str(user_id), ()))

    def connections_for_event(self, event_id: str) -> Set[Connection]:
        with self._lock:
            return set(self._by_event.get(str(event_id), ()))

    def user_count(self) -> int:
        with self._lock:
            return len(self._by_user)

    def event_count(self) -> int:
        with self._lock:
            return len(self._by_event)

    # ---------------------- Fan-out ----------------------

    async def broadcast(
        self,
        event_id: str,
        message_type: str,
        payload: Dict[str, Any],
        exclude_user_id: Optional[str] = None,
    ) -> int:
        """
        Send a message to every connection in an event room.

        Delivery is best effort: a failed send is logged and skipped.

        Args:
            event_id: Room to deliver to
            message_type: Outbound message type (eta_updated, ...)
            payload: Message data
            exclude_user_id: Skip every connection of this user (the sender)

        Returns:
            Number of connections the message was handed to
        """
        recipients = self.connections_for_event(event_id)
        if not recipients:
            return 0

        excluded = str(exclude_user_id) if exclude_user_id is not None else None
        message = {
            "type": BROADCAST_HANDLER,
            "event": message_type,
            "data": payload,
        }

        sent = 0
        for conn in recipients:
            if excluded is not None and conn.user_id == excluded:
                continue
            try:
                await self.channel_layer.send(conn.socket_id, message)
                sent += 1
            except Exception as e:
                logger.warning("Failed to deliver %s to %s: %s", message_type, conn.socket_id, e)

        logger.debug("Broadcast %s to %s connection(s) in event %s", message_type, sent, event_id)
        return sent


def get_connection_registry() -> ConnectionRegistry:
    """Registry owned by the realtime app for this process."""
    from django.apps import apps

    return apps.get_app_config("realtime").registry
