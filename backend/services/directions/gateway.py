"""
Google Directions gateway.

This module provides:
- DirectionsGateway: one synchronous call per origin/destination pair
- AsyncDirectionsGateway: the same call for use inside consumers
- DirectionsResult: normalized provider response

Every failure (missing key, timeout, transport error, provider status,
missing route) is logged and returned as None. Nothing is retried here;
the caller's next cycle is the retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from asgiref.sync import sync_to_async
from django.conf import settings

logger = logging.getLogger(__name__)

DEFAULT_DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"


@dataclass(frozen=True)
class DirectionsResult:
    """Travel estimate for a single route leg."""
    duration_seconds: int
    distance_meters: int
    duration_text: str
    distance_text: str

    @property
    def eta_minutes(self) -> int:
        return round(self.duration_seconds / 60)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.duration_seconds,
            "distance": self.distance_meters,
            "durationText": self.duration_text,
            "distanceText": self.distance_text,
        }


def format_coordinates(lat: float, lng: float) -> str:
    """Render a coordinate pair the way the provider accepts it as origin/destination."""
    return f"{lat},{lng}"


class DirectionsGateway:
    """Stateless wrapper around the Google Directions JSON API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key if api_key is not None else getattr(settings, "GOOGLE_MAPS_API_KEY", "")
        self.base_url = base_url or getattr(settings, "DIRECTIONS_API_URL", DEFAULT_DIRECTIONS_URL)
        self.timeout = timeout or getattr(settings, "DIRECTIONS_TIMEOUT_SECONDS", 30)
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def get_directions(
        self,
        origin: str,
        destination: str,
        mode: str = "driving",
    ) -> Optional[DirectionsResult]:
        """
        Ask the provider for a route between two places.

        Args:
            origin: "lat,lng" or free-text address
            destination: "lat,lng" or free-text address
            mode: Travel mode (driving, walking, bicycling, transit)

        Returns:
            DirectionsResult for the first leg of the first route, or None
        """
        if not self.is_configured:
            logger.warning("Directions requested but GOOGLE_MAPS_API_KEY is not set")
            return None

        params = {
            "origin": origin,
            "destination": destination,
            "mode": mode,
            "key": self.api_key,
        }

        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.Timeout:
            logger.warning("Directions request timed out after %ss (%s -> %s)", self.timeout, origin, destination)
            return None
        except (requests.RequestException, ValueError) as e:
            logger.warning("Directions request failed: %s", e)
            return None

        if not isinstance(data, dict):
            logger.warning("Directions response was not a JSON object (%s -> %s)", origin, destination)
            return None

        provider_status = data.get("status")
        if provider_status != "OK":
            logger.warning(
                "Directions provider returned %s: %s",
                provider_status,
                data.get("error_message", ""),
            )
            return None

        try:
            leg = data["routes"][0]["legs"][0]
            return DirectionsResult(
                duration_seconds=int(leg["duration"]["value"]),
                distance_meters=int(leg["distance"]["value"]),
                duration_text=leg["duration"].get("text", ""),
                distance_text=leg["distance"].get("text", ""),
            )
        except (KeyError, IndexError, TypeError, ValueError):
            logger.warning("Directions response had no usable route (%s -> %s)", origin, destination)
            return None


# ---------------------- Async Wrapper Service ----------------------

class AsyncDirectionsGateway:
    """Async wrapper for DirectionsGateway."""

    def __init__(self, sync_gateway: Optional[DirectionsGateway] = None):
        self._sync_gateway = sync_gateway or DirectionsGateway()

    @property
    def is_configured(self) -> bool:
        return self._sync_gateway.is_configured

    async def get_directions(self, *args, **kwargs) -> Optional[DirectionsResult]:
        # Off the shared sync thread so a slow provider does not stall DB work
        return await sync_to_async(
            self._sync_gateway.get_directions, thread_sensitive=False
        )(*args, **kwargs)


# ---------------------- Singleton Instances ----------------------

_directions_gateway: Optional[DirectionsGateway] = None
_async_directions_gateway: Optional[AsyncDirectionsGateway] = None


def get_directions_gateway() -> DirectionsGateway:
    """Get singleton DirectionsGateway instance."""
    global _directions_gateway
    if _directions_gateway is None:
        _directions_gateway = DirectionsGateway()
    return _directions_gateway


def get_async_directions_gateway() -> AsyncDirectionsGateway:
    """Get singleton AsyncDirectionsGateway instance."""
    global _async_directions_gateway
    if _async_directions_gateway is None:
        _async_directions_gateway = AsyncDirectionsGateway(get_directions_gateway())
    return _async_directions_gateway
