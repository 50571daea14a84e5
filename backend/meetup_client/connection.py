"""
WebSocket connection to an event room, with reconnect and keepalive.

Runs websocket-client's WebSocketApp on a background thread. When the
socket drops the connection retries with exponential backoff
(base delay x 1.5^(attempt-1)) up to `reconnect_attempts` times, then
settles in DISCONNECTED. A manual `disconnect()` never reconnects, and
neither does a handshake the server rejected for its token.
"""

from __future__ import annotations

import json
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import websocket

logger = logging.getLogger(__name__)

# Close codes the server uses for rejected tokens; retrying cannot help
AUTH_CLOSE_CODES = (4001, 4003)


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before reconnect attempt number `attempt` (1-based)."""
    return base_delay * (1.5 ** (attempt - 1))


def build_ws_url(base_url: str, token: str, event_id: Optional[str] = None) -> str:
    if base_url.startswith("http"):
        base_url = "ws" + base_url[len("http"):]
    params = {"token": token}
    if event_id:
        params["eventId"] = event_id
    return f"{base_url.rstrip('/')}/ws/events/?{urlencode(params)}"


class RealtimeConnection:
    """
    Client side of the event WebSocket.

    Args:
        base_url: Server root, http(s):// or ws(s)://
        token: JWT access token
        event_id: Event room to bind to
        reconnect_attempts: Retries after an unexpected close
        reconnect_delay: Base backoff delay in seconds
        ping_interval: Seconds between keepalive pings while connected
        app_factory: Builds the WebSocketApp; swapped out in tests
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        event_id: Optional[str] = None,
        reconnect_attempts: int = 5,
        reconnect_delay: float = 3.0,
        ping_interval: float = 30.0,
        app_factory: Callable[..., Any] = websocket.WebSocketApp,
    ):
        self.url = build_ws_url(base_url, token, event_id)
        self.event_id = event_id
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.ping_interval = ping_interval
        self._app_factory = app_factory

        self._status = ConnectionStatus.DISCONNECTED
        self._app = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._session_closed: Optional[threading.Event] = None
        self._attempt = 0
        self._auth_rejected = False
        self.last_close_code: Optional[int] = None

        self._message_listeners: List[Callable[[Dict[str, Any]], None]] = []
        self._status_listeners: List[Callable[[ConnectionStatus], None]] = []

    # ---------------------- Listeners ----------------------

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status == ConnectionStatus.CONNECTED

    def add_message_listener(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        self._message_listeners.append(callback)

    def add_status_listener(self, callback: Callable[[ConnectionStatus], None]) -> None:
        self._status_listeners.append(callback)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.info("Realtime connection %s", status.value)
        for callback in list(self._status_listeners):
            try:
                callback(status)
            except Exception:
                logger.exception("Status listener failed")

    # ---------------------- Lifecycle ----------------------

    def connect(self) -> None:
        """Open the socket on a background thread. No-op if already running."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._attempt = 0
        self._auth_rejected = False
        self._set_status(ConnectionStatus.CONNECTING)
        self._thread = threading.Thread(target=self._run, name="realtime-connection", daemon=True)
        self._thread.start()

    def disconnect(self) -> None:
        """Close for good; no reconnect follows."""
        self._stop_event.set()
        app = self._app
        if app is not None:
            try:
                app.close()
            except websocket.WebSocketException as e:
                logger.debug("Error closing socket: %s", e)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._set_status(ConnectionStatus.DISCONNECTED)

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until the background thread has finished."""
        if self._thread is not None:
            self._thread.join(timeout)

    def next_reconnect_delay(self) -> Optional[float]:
        """Advance the attempt counter; None once attempts are exhausted."""
        if self._attempt >= self.reconnect_attempts:
            return None
        self._attempt += 1
        return backoff_delay(self._attempt, self.reconnect_delay)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._app = self._app_factory(
                self.url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
            self._app.run_forever()

            if self._stop_event.is_set() or self._auth_rejected:
                break

            delay = self.next_reconnect_delay()
            if delay is None:
                logger.warning("Giving up after %s reconnect attempts", self.reconnect_attempts)
                break

            self._set_status(ConnectionStatus.RECONNECTING)
            logger.info("Reconnecting in %.1fs (attempt %s/%s)", delay, self._attempt, self.reconnect_attempts)
            if self._stop_event.wait(delay):
                break

        self._app = None
        self._set_status(ConnectionStatus.DISCONNECTED)

    # ---------------------- WebSocketApp callbacks ----------------------

    def _on_open(self, ws) -> None:
        self._attempt = 0
        self._session_closed = threading.Event()
        threading.Thread(
            target=self._ping_loop,
            args=(self._session_closed,),
            name="realtime-ping",
            daemon=True,
        ).start()
        self._set_status(ConnectionStatus.CONNECTED)

    def _on_message(self, ws, text: str) -> None:
        try:
            message = json.loads(text)
        except ValueError:
            logger.warning("Dropping non-JSON frame: %r", text[:200])
            return

        if not isinstance(message, dict):
            logger.warning("Dropping frame that is not a JSON object: %r", text[:200])
            return

        if message.get("type") == "error":
            logger.warning("Server error: %s", (message.get("data") or {}).get("message"))

        for callback in list(self._message_listeners):
            try:
                callback(message)
            except Exception:
                logger.exception("Message listener failed for %s", message.get("type"))

    def _on_error(self, ws, error) -> None:
        logger.warning("Realtime socket error: %s", error)

    def _on_close(self, ws, close_status_code=None, close_msg=None) -> None:
        self.last_close_code = close_status_code
        if self._session_closed is not None:
            self._session_closed.set()
        if close_status_code in AUTH_CLOSE_CODES:
            logger.error("Server rejected the token (code %s)", close_status_code)
            self._auth_rejected = True
        if not self._stop_event.is_set():
            self._set_status(ConnectionStatus.DISCONNECTED)

    def _ping_loop(self, session_closed: threading.Event) -> None:
        while not session_closed.wait(self.ping_interval):
            if not self.send_message("ping"):
                return

    # ---------------------- Sending ----------------------

    def send_message(self, msg_type: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Send a typed frame. False when the socket is not open."""
        app = self._app
        if app is None or not self.is_connected:
            return False

        frame = {"type": msg_type}
        if data is not None:
            frame["data"] = data
        try:
            app.send(json.dumps(frame))
        except websocket.WebSocketException as e:
            logger.warning("Failed to send %s: %s", msg_type, e)
            return False
        return True
