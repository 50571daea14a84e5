"""
Location update pipeline.

Given one (lat, lng) sample from a participant:
1. Load the event and the sender's participant row
2. Distance to the event, when the event has coordinates
3. Movement flag against the previous sample
4. ETA from the directions gateway (failure means eta=0, not an error)
5. Persist the participant row
6. Broadcast eta_updated to the event room, excluding the sender

A failure in steps 1-5 raises and nothing is broadcast. Samples for the
same participant are applied one at a time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple
from weakref import WeakValueDictionary

from channels.db import database_sync_to_async
from django.utils import timezone

from common.utils import distance_km
from events import storage
from events.models import Event, EventParticipant
from realtime.messages import OutboundEvent
from services.directions import format_coordinates, get_async_directions_gateway
from .exceptions import (
    EventNotFoundError,
    NotAParticipantError,
    LocationSharingDisabledError,
)

logger = logging.getLogger(__name__)


# ---------------------- Configuration ----------------------

LOCATION_PIPELINE_CONFIG = {
    "MOVING_DISTANCE_KM": 0.1,      # Must move further than this between samples
    "MOVING_WINDOW_SECONDS": 30,    # ...within this long to count as moving
    "TRAVEL_MODE": "driving",
}


@dataclass
class LocationUpdateResult:
    """Outcome of one applied sample."""
    participant: EventParticipant
    distance: Optional[float]
    eta: int
    is_moving: bool
    timestamp: datetime
    recipients: int = 0


def compute_is_moving(
    participant: EventParticipant,
    lat: float,
    lng: float,
    now: datetime,
) -> bool:
    """
    Whether the participant is travelling, judged against their previous sample.

    False on the first report. A previous sample without a timestamp counts
    as just taken.
    """
    if not participant.has_location:
        return False

    moved = distance_km(participant.last_lat, participant.last_lng, lat, lng)
    elapsed = 0.0
    if participant.last_location_at is not None:
        elapsed = (now - participant.last_location_at).total_seconds()

    return (
        moved > LOCATION_PIPELINE_CONFIG["MOVING_DISTANCE_KM"]
        and elapsed < LOCATION_PIPELINE_CONFIG["MOVING_WINDOW_SECONDS"]
    )


@database_sync_to_async
def _load_context(event_id, user_id) -> Tuple[Event, EventParticipant]:
    event = storage.get_event(event_id)
    if event is None:
        raise EventNotFoundError(f"Event {event_id} not found")

    participant = storage.get_participant(event_id, user_id)
    if participant is None:
        raise NotAParticipantError(f"User {user_id} is not a participant of event {event_id}")

    if not event.allow_location_sharing:
        raise LocationSharingDisabledError(f"Location sharing is disabled for event {event_id}")

    return event, participant


_persist_location = database_sync_to_async(storage.update_participant_location)


class LocationUpdatePipeline:
    """
    Applies location samples and notifies the event room.

    Args:
        registry: ConnectionRegistry used for the eta_updated fan-out
        gateway: Async directions gateway, defaults to the shared instance
        clock: Returns the current time; injectable for tests
    """

    def __init__(self, registry, gateway=None, clock: Callable[[], datetime] = timezone.now):
        self.registry = registry
        self.gateway = gateway or get_async_directions_gateway()
        self.clock = clock
        self._locks: "WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = WeakValueDictionary()

    def _lock_for(self, event_id, user_id) -> asyncio.Lock:
        key = (str(event_id), str(user_id))
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def process(self, event_id, user_id, lat: float, lng: float) -> LocationUpdateResult:
        """
        Apply one location sample.

        Raises:
            EventNotFoundError: the event does not exist
            NotAParticipantError: the sender is not on the roster
            LocationSharingDisabledError: the event does not accept locations
        """
        lock = self._lock_for(event_id, user_id)
        async with lock:
            event, participant = await _load_context(event_id, user_id)
            now = self.clock()

            distance = None
            if event.has_coordinates:
                distance = distance_km(lat, lng, event.location_lat, event.location_lng)

            is_moving = compute_is_moving(participant, lat, lng, now)
            eta = await self._estimate_eta(event, lat, lng)

            updated = await _persist_location(
                event_id, user_id, lat, lng, is_moving, eta, distance, now=now
            )
            if updated is None:
                # Left the event while the ETA was being fetched
                raise NotAParticipantError(f"User {user_id} left event {event_id}")

        payload = {
            "eventId": str(event_id),
            "participantId": str(user_id),
            "eta": eta,
            "distance": distance if distance is not None else 0.0,
            "isMoving": is_moving,
            "timestamp": now.isoformat(),
        }
        recipients = await self.registry.broadcast(
            str(event_id),
            OutboundEvent.ETA_UPDATED.value,
            payload,
            exclude_user_id=str(user_id),
        )

        logger.debug(
            "Location applied for %s in %s (distance=%s eta=%s moving=%s, %s recipients)",
            user_id, event_id, distance, eta, is_moving, recipients,
        )
        return LocationUpdateResult(
            participant=updated,
            distance=distance,
            eta=eta,
            is_moving=is_moving,
            timestamp=now,
            recipients=recipients,
        )

    async def _estimate_eta(self, event: Event, lat: float, lng: float) -> int:
        """Travel minutes to the event; 0 when the provider gives no answer."""
        if event.has_coordinates:
            destination = format_coordinates(event.location_lat, event.location_lng)
        else:
            destination = event.location

        try:
            result = await self.gateway.get_directions(
                format_coordinates(lat, lng),
                destination,
                LOCATION_PIPELINE_CONFIG["TRAVEL_MODE"],
            )
        except Exception as e:
            logger.warning("Directions gateway raised for event %s: %s", event.id, e)
            return 0

        if result is None:
            return 0
        return result.eta_minutes
