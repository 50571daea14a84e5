"""
Geographic utility functions.

This module provides the geometry shared by the server pipeline and the client:
- Great-circle distance between two coordinates (kilometres)
- Movement threshold test
- Arrival status bucketing
- Human readable distance / ETA strings
"""

from enum import Enum
from math import radians, cos, sin, asin, sqrt

EARTH_RADIUS_KM = 6371.0

# Status bucket upper bounds (km, exclusive)
ARRIVED_THRESHOLD_KM = 0.1
CLOSE_THRESHOLD_KM = 1.0
MOVING_THRESHOLD_KM = 10.0


class ParticipantStatus(str, Enum):
    ARRIVED = "arrived"
    CLOSE = "close"
    MOVING = "moving"
    FAR = "far"


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in kilometres using Haversine formula.

    Inputs are not range checked; callers validate latitude/longitude bounds.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in kilometres
    """
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    # Rounding can push `a` a hair above 1 for antipodal points
    c = 2 * asin(sqrt(min(1.0, a)))
    return c * EARTH_RADIUS_KM


def has_moved_significantly(
    old_lat: float,
    old_lng: float,
    new_lat: float,
    new_lng: float,
    threshold_km: float = 0.1,
) -> bool:
    """True when the two points are at least `threshold_km` apart."""
    return distance_km(old_lat, old_lng, new_lat, new_lng) >= threshold_km


def classify_status(distance: float) -> ParticipantStatus:
    """Bucket a distance to the event (km) into an arrival status."""
    if distance < ARRIVED_THRESHOLD_KM:
        return ParticipantStatus.ARRIVED
    if distance < CLOSE_THRESHOLD_KM:
        return ParticipantStatus.CLOSE
    if distance < MOVING_THRESHOLD_KM:
        return ParticipantStatus.MOVING
    return ParticipantStatus.FAR


# ---------------------- Formatting ----------------------

def format_distance(km: float) -> str:
    if km < 1:
        return f"{round(km * 1000)}m away"
    return f"{km:.1f} km away"


def format_eta(minutes: float) -> str:
    if minutes < 1:
        return "Arriving now"
    if minutes < 60:
        return f"{round(minutes)} min"

    hours = int(minutes // 60)
    mins = round(minutes % 60)
    if mins == 60:
        hours, mins = hours + 1, 0
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}m"
