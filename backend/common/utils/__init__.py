"""Common utility functions."""

from .geo import (
    ParticipantStatus,
    classify_status,
    distance_km,
    format_distance,
    format_eta,
    has_moved_significantly,
)
from .eta import LeaveByDeadline, compute_leave_by

__all__ = [
    "ParticipantStatus",
    "classify_status",
    "distance_km",
    "format_distance",
    "format_eta",
    "has_moved_significantly",
    "LeaveByDeadline",
    "compute_leave_by",
]
