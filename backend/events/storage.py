"""
Persistence operations for events and their participants.

This module provides:
- Event reads (single, with roster, per user)
- Idempotent join / leave
- Participant location writes used by the location pipeline
- Event creation (creator auto-joined) and deletion

All functions are synchronous ORM calls. Async callers wrap them with
`database_sync_to_async`.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from .models import Event, EventParticipant

User = get_user_model()
logger = logging.getLogger(__name__)


@dataclass
class EventWithParticipants:
    """An event, its roster and the viewer's relationship to it."""
    event: Event
    participants: List[EventParticipant] = field(default_factory=list)
    is_creator: bool = False
    is_participant: bool = False


# ===================== Reads =====================

def get_event(event_id) -> Optional[Event]:
    return Event.objects.select_related('creator').filter(id=event_id).first()


def get_event_participants(event_id) -> List[EventParticipant]:
    return list(
        EventParticipant.objects.select_related('user').filter(event_id=event_id)
    )


def get_participant(event_id, user_id) -> Optional[EventParticipant]:
    return EventParticipant.objects.filter(event_id=event_id, user_id=user_id).first()


def get_event_with_participants(event_id, user_id) -> Optional[EventWithParticipants]:
    """
    Load an event together with its roster.

    Read only: viewing an event never makes the viewer a participant.

    Args:
        event_id: Event primary key
        user_id: The viewing user

    Returns:
        EventWithParticipants, or None when the event does not exist
    """
    event = get_event(event_id)
    if event is None:
        return None

    participants = get_event_participants(event_id)
    return EventWithParticipants(
        event=event,
        participants=participants,
        is_creator=str(event.creator_id) == str(user_id),
        is_participant=any(str(p.user_id) == str(user_id) for p in participants),
    )


def get_user_events(user_id) -> List[Event]:
    """Events the user created or participates in, soonest first."""
    return list(
        Event.objects.select_related('creator')
        .filter(Q(creator_id=user_id) | Q(participants__user_id=user_id))
        .distinct()
        .order_by('datetime')
    )


def get_user(user_id):
    return User.objects.filter(id=user_id).first()


# ===================== Membership =====================

def join_event(event_id, user_id) -> Tuple[EventParticipant, bool]:
    """
    Add the user to the event roster.

    Idempotent: a second call returns the existing row.

    Returns:
        (participant, created)
    """
    try:
        with transaction.atomic():
            return EventParticipant.objects.get_or_create(event_id=event_id, user_id=user_id)
    except IntegrityError:
        # Lost a race with a concurrent join for the same pair
        participant = EventParticipant.objects.get(event_id=event_id, user_id=user_id)
        return participant, False


def leave_event(event_id, user_id) -> bool:
    """Remove the user from the roster. Returns False if they were not on it."""
    deleted, _ = EventParticipant.objects.filter(event_id=event_id, user_id=user_id).delete()
    return deleted > 0


# ===================== Location =====================

@transaction.atomic
def update_participant_location(
    event_id,
    user_id,
    lat: float,
    lng: float,
    is_moving: bool,
    eta: int,
    distance: Optional[float],
    now: Optional[datetime] = None,
) -> Optional[EventParticipant]:
    """
    Record a participant's latest position and derived travel state.

    The row is locked for the read-modify-write so concurrent samples for
    the same participant cannot overwrite each other.

    Args:
        event_id: Event primary key
        user_id: Participant's user id
        lat: Latitude of the new sample
        lng: Longitude of the new sample
        is_moving: Movement flag computed from the previous sample
        eta: Travel time in minutes; 0 means unknown and keeps the old arrival
        distance: Distance to the event in km; None keeps the old value
        now: Timestamp for the sample, defaults to the current time

    Returns:
        The updated participant, or None if the user is not on the roster
    """
    now = now or timezone.now()

    participant = (
        EventParticipant.objects.select_for_update()
        .filter(event_id=event_id, user_id=user_id)
        .first()
    )
    if participant is None:
        return None

    participant.last_lat = lat
    participant.last_lng = lng
    participant.last_location_at = now
    participant.is_moving = is_moving
    update_fields = ['last_lat', 'last_lng', 'last_location_at', 'is_moving']

    if distance is not None:
        participant.distance_to_event = distance
        update_fields.append('distance_to_event')

    if eta and eta > 0:
        participant.estimated_arrival = now + timedelta(minutes=eta)
        update_fields.append('estimated_arrival')

    participant.save(update_fields=update_fields)
    return participant


# ===================== Event lifecycle =====================

@transaction.atomic
def create_event(creator, **fields) -> Event:
    """Create an event and put its creator on the roster."""
    event = Event.objects.create(creator=creator, **fields)
    join_event(event.id, creator.id)
    logger.info("Event %s created by %s", event.id, creator.id)
    return event


def delete_event(event_id) -> bool:
    deleted, _ = Event.objects.filter(id=event_id).delete()
    return deleted > 0
