"""
Notification helpers for event rooms.

This module provides:
- Payload builders for the membership broadcasts (joined / left / deleted)
- notify_event(): broadcast from synchronous code such as DRF views
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from asgiref.sync import async_to_sync

from accounts.serializers import UserSerializer
from .messages import OutboundEvent
from .registry import ConnectionRegistry, get_connection_registry

logger = logging.getLogger(__name__)


# ---------------------- Payload builders ----------------------

def participant_joined_payload(event_id, user) -> Dict[str, Any]:
    return {
        "eventId": str(event_id),
        "participant": {
            "id": str(user.id),
            "user": UserSerializer(user).data,
        },
    }


def participant_left_payload(event_id, user_id) -> Dict[str, Any]:
    return {
        "eventId": str(event_id),
        "participantId": str(user_id),
    }


def event_deleted_payload(event_id) -> Dict[str, Any]:
    return {"eventId": str(event_id)}


# ---------------------- Sync broadcast ----------------------

def notify_event(
    event_id,
    message_type: OutboundEvent,
    payload: Dict[str, Any],
    exclude_user_id=None,
    registry: Optional[ConnectionRegistry] = None,
) -> int:
    """
    Broadcast to an event room from synchronous code.

    Best effort: a failure is logged and reported as zero recipients so the
    HTTP request that triggered it still succeeds.

    Returns:
        Number of connections the message was handed to
    """
    registry = registry or get_connection_registry()
    try:
        return async_to_sync(registry.broadcast)(
            str(event_id),
            OutboundEvent(message_type).value,
            payload,
            exclude_user_id=str(exclude_user_id) if exclude_user_id is not None else None,
        )
    except Exception as e:
        logger.warning("Failed to broadcast %s for event %s: %s", message_type, event_id, e)
        return 0
