"""
Message shapes exchanged over the event WebSocket.

Inbound frames look like {"type": "...", "data": {...}} (fields may also sit
at the top level). `parse_inbound` validates a frame and returns one of the
dataclass variants below; anything else raises MalformedMessageError.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Type, Union

from rest_framework import serializers


class MalformedMessageError(ValueError):
    """Raised when an inbound frame cannot be turned into a known message."""
    pass


class OutboundEvent(str, Enum):
    """Broadcast types fanned out to an event room."""
    ETA_UPDATED = "eta_updated"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    EVENT_DELETED = "event_deleted"


# ---------------------- Inbound variants ----------------------

@dataclass(frozen=True)
class LocationUpdate:
    event_id: Optional[str]
    lat: float
    lng: float


@dataclass(frozen=True)
class ParticipantJoined:
    event_id: Optional[str]


@dataclass(frozen=True)
class ParticipantLeft:
    event_id: Optional[str]


@dataclass(frozen=True)
class Ping:
    pass


InboundMessage = Union[LocationUpdate, ParticipantJoined, ParticipantLeft, Ping]


# ---------------------- Validation ----------------------

class EventRefSerializer(serializers.Serializer):
    # Optional: a socket opened with ?eventId= may leave it out
    eventId = serializers.UUIDField(required=False, allow_null=True)


class LocationUpdateSerializer(EventRefSerializer):
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lng = serializers.FloatField(min_value=-180, max_value=180)


def _validated(serializer_class: Type[serializers.Serializer], data: Dict[str, Any]) -> Dict[str, Any]:
    serializer = serializer_class(data=data)
    if not serializer.is_valid():
        field, errors = next(iter(serializer.errors.items()))
        raise MalformedMessageError(f"Invalid {field}: {errors[0]}")
    return serializer.validated_data


def _event_id(data: Dict[str, Any]) -> Optional[str]:
    value = data.get("eventId")
    return str(value) if value is not None else None


def _parse_location_update(data: Dict[str, Any]) -> LocationUpdate:
    data = _validated(LocationUpdateSerializer, data)
    return LocationUpdate(event_id=_event_id(data), lat=data["lat"], lng=data["lng"])


def _parse_participant_joined(data: Dict[str, Any]) -> ParticipantJoined:
    return ParticipantJoined(event_id=_event_id(_validated(EventRefSerializer, data)))


def _parse_participant_left(data: Dict[str, Any]) -> ParticipantLeft:
    return ParticipantLeft(event_id=_event_id(_validated(EventRefSerializer, data)))


def _parse_ping(data: Dict[str, Any]) -> Ping:
    return Ping()


INBOUND_PARSERS: Dict[str, Callable[[Dict[str, Any]], InboundMessage]] = {
    "location_update": _parse_location_update,
    "participant_joined": _parse_participant_joined,
    "participant_left": _parse_participant_left,
    "ping": _parse_ping,
}

INBOUND_VARIANTS = (LocationUpdate, ParticipantJoined, ParticipantLeft, Ping)


def parse_inbound(frame: Any) -> InboundMessage:
    """
    Turn a decoded JSON frame into an inbound message variant.

    Raises:
        MalformedMessageError: frame is not an object, has no/unknown type,
            or its fields fail validation
    """
    if not isinstance(frame, dict):
        raise MalformedMessageError("Message must be a JSON object")

    msg_type = frame.get("type")
    if not msg_type:
        raise MalformedMessageError("Message type is required")

    parser = INBOUND_PARSERS.get(msg_type)
    if parser is None:
        raise MalformedMessageError(f"Unknown message type: {msg_type}")

    data = frame.get("data")
    if data is None:
        data = {k: v for k, v in frame.items() if k != "type"}
    if not isinstance(data, dict):
        raise MalformedMessageError("Message data must be an object")

    return parser(data)
