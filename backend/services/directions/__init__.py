"""
Directions service.

Wraps the external routing provider behind one call that never raises:
failures come back as None and callers retry on their next cycle.
"""

from .gateway import (
    AsyncDirectionsGateway,
    DirectionsGateway,
    DirectionsResult,
    format_coordinates,
    get_async_directions_gateway,
    get_directions_gateway,
)

__all__ = [
    "AsyncDirectionsGateway",
    "DirectionsGateway",
    "DirectionsResult",
    "format_coordinates",
    "get_async_directions_gateway",
    "get_directions_gateway",
]
