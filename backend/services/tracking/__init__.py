"""
Tracking service.

Applies a participant's location sample: movement, distance and ETA are
derived, the participant row is updated and the event room is notified.
"""

from .exceptions import (
    LocationUpdateError,
    EventNotFoundError,
    NotAParticipantError,
    LocationSharingDisabledError,
)
from .location_pipeline import (
    LOCATION_PIPELINE_CONFIG,
    LocationUpdatePipeline,
    LocationUpdateResult,
    compute_is_moving,
)

__all__ = [
    "LOCATION_PIPELINE_CONFIG",
    "LocationUpdatePipeline",
    "LocationUpdateResult",
    "compute_is_moving",
    "LocationUpdateError",
    "EventNotFoundError",
    "NotAParticipantError",
    "LocationSharingDisabledError",
]
