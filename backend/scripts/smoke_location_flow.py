"""End-to-end smoke run of the live location flow against a running server.

Prerequisites:
1. `python manage.py migrate` and `python manage.py runserver` must be running.
2. Install the project once: `pip install -e .` from the repo root.

The script will:
- Ensure two demo users exist (auto-register if missing) and log them in.
- Create an event as the first user and join it as the second.
- Open an event socket for both users.
- Send one location update from the first user and wait for the second
  user's socket to receive the eta_updated broadcast.
"""

from __future__ import annotations

import logging
import os
import queue
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Dict

from meetup_client import ApiError, ConnectionStatus, MeetupApiClient, RealtimeConnection

BASE_URL = os.environ.get("MEETUP_BASE_URL", "http://127.0.0.1:8000")

HOST_CREDS = {
    "username": "smoke_host",
    "email": "smoke_host@example.com",
    "password": "demo12345",
}

GUEST_CREDS = {
    "username": "smoke_guest",
    "email": "smoke_guest@example.com",
    "password": "demo12345",
}

# Connaught Place -> India Gate
EVENT_COORDS = {"location_lat": 28.6129, "location_lng": 77.2295}
HOST_POSITION = {"lat": 28.6315, "lng": 77.2167}


def _login_or_register(creds: Dict[str, str]) -> MeetupApiClient:
    client = MeetupApiClient(BASE_URL)
    try:
        client.login(creds["email"], creds["password"])
    except ApiError:
        client.register(creds["username"], creds["email"], creds["password"])
    print(f"[API] Logged in as {client.user['username']}")
    return client


def _open_socket(client: MeetupApiClient, event_id: str, inbox: "queue.Queue") -> RealtimeConnection:
    connection = RealtimeConnection(BASE_URL, client.token, event_id=event_id, reconnect_attempts=0)
    connection.add_message_listener(inbox.put)
    connection.connect()

    deadline = time.time() + 10
    while connection.status != ConnectionStatus.CONNECTED:
        if time.time() > deadline or connection.status == ConnectionStatus.DISCONNECTED:
            raise RuntimeError(f"Socket did not open (last close code {connection.last_close_code})")
        time.sleep(0.1)
    print(f"[WS] {client.user['username']} connected")
    return connection


def _wait_for(inbox: "queue.Queue", msg_type: str, timeout: float = 40) -> Dict:
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            message = inbox.get(timeout=deadline - time.time())
        except queue.Empty:
            break
        print(f"[WS] Received: {message}")
        if message.get("type") == msg_type:
            return message
    raise TimeoutError(f"No {msg_type} within {timeout}s")


def main() -> int:
    logging.basicConfig(level=logging.INFO)

    host = _login_or_register(HOST_CREDS)
    guest = _login_or_register(GUEST_CREDS)

    event = host.create_event(
        name="Smoke test meetup",
        location="India Gate, New Delhi",
        datetime=(datetime.now(timezone.utc) + timedelta(hours=1)).isoformat(),
        **EVENT_COORDS,
    )
    event_id = event["id"]
    print(f"[API] Created event {event_id}")

    guest.join_event(event_id)
    print("[API] Guest joined")

    host_inbox: "queue.Queue" = queue.Queue()
    guest_inbox: "queue.Queue" = queue.Queue()
    host_socket = _open_socket(host, event_id, host_inbox)
    guest_socket = _open_socket(guest, event_id, guest_inbox)

    try:
        host_socket.send_message("location_update", {"eventId": event_id, **HOST_POSITION})
        update = _wait_for(guest_inbox, "eta_updated")
        assert update["data"]["participantId"] == str(host.user["id"]), update
        print(f"[OK] Guest saw host at {update['data']['distance']:.2f} km, eta {update['data']['eta']} min")
    finally:
        host_socket.disconnect()
        guest_socket.disconnect()
        host.delete_event(event_id)

    return 0


if __name__ == "__main__":
    sys.exit(main())
