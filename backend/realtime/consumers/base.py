"""Base WebSocket consumer with shared functionality for all consumers."""

import json
import logging
from typing import Dict, Any, Optional

from channels.generic.websocket import AsyncJsonWebsocketConsumer

from realtime.middleware import TOKEN_REQUIRED
from realtime.registry import Connection, get_connection_registry

logger = logging.getLogger(__name__)

# Close codes sent when the handshake token is rejected
CLOSE_TOKEN_REQUIRED = 4001
CLOSE_TOKEN_INVALID = 4003


class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Base consumer with shared connection management and helper methods.

    Authenticated sockets are recorded in the ConnectionRegistry for as
    long as they are open. Pass `registry=` to `as_asgi()` to use a
    specific registry; otherwise the app's registry is used.

    Subclasses should override:
        - on_connect(): custom logic once the socket is open and registered
        - handle_message(msg_type, data): handle incoming messages
    """

    registry = None

    def __init__(self, *args, registry=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.registry = registry or self.registry
        self.connection: Optional[Connection] = None

    async def connect(self):
        self.user = self.scope.get("user")
        auth_error = self.scope.get("auth_error")

        if auth_error or self.user is None or self.user.is_anonymous:
            await self._reject(auth_error)
            return

        if self.registry is None:
            self.registry = get_connection_registry()

        # Basic attributes available to all consumers
        self.user_id = str(self.user.id)
        self.event_id = self.get_event_id()

        self.connection = Connection(
            socket_id=self.channel_name,
            user_id=self.user_id,
            event_id=self.event_id,
        )

        await self.accept()
        self.registry.register(self.connection)
        await self.on_connect()

    async def _reject(self, auth_error: Optional[str]):
        """Tell the client why and close with a code that says the same."""
        if auth_error == TOKEN_REQUIRED:
            reason, code = "token_required", CLOSE_TOKEN_REQUIRED
        else:
            reason, code = "token_invalid", CLOSE_TOKEN_INVALID

        logger.info("Rejecting WebSocket handshake: %s", reason)
        await self.accept()
        await self.send_error(reason)
        await self.close(code=code)

    def get_event_id(self) -> Optional[str]:
        """Room to bind this socket to; override to validate."""
        return self.scope.get("event_id")

    async def on_connect(self):
        """Override in subclass for custom connect logic."""
        await self.send_success(
            "connection_established",
            userId=self.user_id,
            eventId=self.event_id,
        )

    async def disconnect(self, close_code):
        """Drop the socket from the registry, whatever else goes wrong."""
        try:
            await self.on_disconnect(close_code)
        except Exception:
            logger.exception("Error during disconnect for user %s", getattr(self, 'user_id', 'unknown'))
        finally:
            if self.connection is not None:
                self.registry.unregister(self.connection)
                self.connection = None

    async def on_disconnect(self, close_code):
        """Override in subclass for custom disconnect logic."""
        pass

    async def receive(self, text_data=None, bytes_data=None, **kwargs):
        """Decode JSON frames; undecodable ones get an error reply instead of a crash."""
        if self.connection is None:
            # Rejected handshake, close already sent
            return
        if text_data is None:
            await self.send_error("Binary frames are not supported")
            return
        try:
            content = await self.decode_json(text_data)
        except (TypeError, ValueError):
            await self.send_error("Invalid JSON")
            return
        await self.receive_json(content, **kwargs)

    async def receive_json(self, data: Dict[str, Any], **kwargs):
        """Route incoming messages to appropriate handlers."""
        msg_type = data.get("type") if isinstance(data, dict) else None
        if not msg_type:
            await self.send_error("Message type is required")
            return

        try:
            await self.handle_message(msg_type, data)
        except Exception:
            logger.exception("Error handling message type %s", msg_type)
            await self.send_error(f"Error processing {msg_type}")

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Override in subclass to handle specific message types."""
        await self.send_error(f"Unknown message type: {msg_type}")

    @classmethod
    async def encode_json(cls, content):
        return json.dumps(content, default=str)

    # ---------------------- Response Helpers ----------------------

    async def send_error(self, message: str):
        """Send an error message to the client."""
        await self.send_json({
            "type": "error",
            "data": {"message": message},
        })

    async def send_success(self, event_type: str, **kwargs):
        """Send a typed message to the client."""
        await self.send_json({
            "type": event_type,
            "data": kwargs,
        })

    # ---------------------- Registry Event Handlers ----------------------
    # These handle channel_layer.send messages from ConnectionRegistry.broadcast

    async def realtime_broadcast(self, event):
        """Forward a room broadcast to the socket."""
        await self.send_json({
            "type": event.get("event"),
            "data": event.get("data", {}),
        })
