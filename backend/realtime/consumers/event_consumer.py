"""Event WebSocket consumer: live locations and roster changes for one event room."""

import asyncio
import logging
import uuid
from typing import Dict, Any, Optional

from channels.db import database_sync_to_async
from django.conf import settings
from django.utils import timezone

from events import storage
from realtime.messages import (
    LocationUpdate,
    MalformedMessageError,
    OutboundEvent,
    ParticipantJoined,
    ParticipantLeft,
    Ping,
    parse_inbound,
)
from realtime.notifications import participant_joined_payload, participant_left_payload
from services.tracking import LocationUpdateError, LocationUpdatePipeline
from .base import BaseConsumer

logger = logging.getLogger(__name__)

CLOSE_IDLE_TIMEOUT = 4008


@database_sync_to_async
def _join(event_id, user_id):
    if storage.get_event(event_id) is None:
        return None
    participant, _ = storage.join_event(event_id, user_id)
    return storage.get_user(user_id) if participant else None


_leave = database_sync_to_async(storage.leave_event)


class EventConsumer(BaseConsumer):
    """
    WebSocket consumer for event participants.

    URL: ws/events/?token=<jwt>&eventId=<uuid>

    Handles:
        - location_update: run the location pipeline, room gets eta_updated
        - participant_joined / participant_left: roster change + room broadcast
        - ping: pong with server time

    Sockets that send nothing for REALTIME_IDLE_TIMEOUT_SECONDS are closed.
    """

    pipeline = None

    def __init__(self, *args, pipeline=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.pipeline = pipeline or self.pipeline
        self._idle_task: Optional[asyncio.Task] = None
        self._last_seen = 0.0
        self.handlers = {
            LocationUpdate: self._handle_location_update,
            ParticipantJoined: self._handle_participant_joined,
            ParticipantLeft: self._handle_participant_left,
            Ping: self._handle_ping,
        }

    def get_event_id(self) -> Optional[str]:
        event_id = self.scope.get("event_id")
        if not event_id:
            return None
        try:
            return str(uuid.UUID(str(event_id)))
        except ValueError:
            logger.info("Ignoring malformed eventId %r from user %s", event_id, self.user_id)
            return None

    async def on_connect(self):
        if self.pipeline is None:
            self.pipeline = LocationUpdatePipeline(registry=self.registry)

        self._touch()
        self._idle_task = asyncio.ensure_future(self._idle_watchdog())

        await super().on_connect()

    async def on_disconnect(self, close_code):
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None
        logger.info("User %s left event socket %s (code=%s)", getattr(self, "user_id", None), self.channel_name, close_code)

    # ---------------------- Idle timeout ----------------------

    @property
    def idle_timeout(self) -> float:
        return float(getattr(settings, "REALTIME_IDLE_TIMEOUT_SECONDS", 120))

    def _touch(self):
        self._last_seen = asyncio.get_running_loop().time()

    async def _idle_watchdog(self):
        loop = asyncio.get_running_loop()
        while True:
            remaining = self._last_seen + self.idle_timeout - loop.time()
            if remaining <= 0:
                logger.info("Closing idle socket for user %s", self.user_id)
                await self.close(code=CLOSE_IDLE_TIMEOUT)
                return
            await asyncio.sleep(remaining)

    # ---------------------- Message Routing ----------------------

    async def receive(self, text_data=None, bytes_data=None, **kwargs):
        # Any frame counts as activity, even one that fails to parse
        self._touch()
        await super().receive(text_data=text_data, bytes_data=bytes_data, **kwargs)

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        try:
            message = parse_inbound(data)
        except MalformedMessageError as e:
            await self.send_error(str(e))
            return

        handler = self.handlers[type(message)]
        await handler(message)

    def _resolve_event_id(self, requested: Optional[str]) -> Optional[str]:
        return requested or self.event_id

    async def _handle_location_update(self, message: LocationUpdate):
        event_id = self._resolve_event_id(message.event_id)
        if event_id is None:
            await self.send_error("eventId is required")
            return

        try:
            await self.pipeline.process(event_id, self.user_id, message.lat, message.lng)
        except LocationUpdateError as e:
            logger.info("Location update rejected for user %s: %s", self.user_id, e)
            await self.send_error(f"Location update failed: {e}")
        except Exception:
            logger.exception("Location update failed for user %s in event %s", self.user_id, event_id)
            await self.send_error("Location update failed")

    async def _handle_participant_joined(self, message: ParticipantJoined):
        event_id = self._resolve_event_id(message.event_id)
        if event_id is None:
            await self.send_error("eventId is required")
            return

        user = await _join(event_id, self.user_id)
        if user is None:
            await self.send_error("Failed to join event")
            return

        await self.registry.broadcast(
            event_id,
            OutboundEvent.PARTICIPANT_JOINED.value,
            participant_joined_payload(event_id, user),
            exclude_user_id=self.user_id,
        )

    async def _handle_participant_left(self, message: ParticipantLeft):
        event_id = self._resolve_event_id(message.event_id)
        if event_id is None:
            await self.send_error("eventId is required")
            return

        left = await _leave(event_id, self.user_id)
        if not left:
            await self.send_error("Not a participant of this event")
            return

        await self.registry.broadcast(
            event_id,
            OutboundEvent.PARTICIPANT_LEFT.value,
            participant_left_payload(event_id, self.user_id),
            exclude_user_id=self.user_id,
        )

    async def _handle_ping(self, message: Ping):
        await self.send_success("pong", timestamp=timezone.now().isoformat())

