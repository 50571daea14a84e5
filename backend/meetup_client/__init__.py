"""
Python client for the meetup live-ETA backend.

This package provides:
- MeetupApiClient: REST calls (auth, events, membership, directions)
- RealtimeConnection: event socket with backoff reconnect and keepalive
- LocationReporter: filtered periodic location_update sender
- EtaRefreshScheduler: throttled roster-wide ETA / leave-by computation
- EventStateSync: canonical event state, re-fetched and recomputed by a worker thread
"""

from .api import ApiError, MeetupApiClient
from .connection import ConnectionStatus, RealtimeConnection
from .eta_refresh import EtaRefreshScheduler, ParticipantEta, RosterEntry
from .event_sync import EventStateSync
from .location_reporter import GeolocationError, LocationReporter, Position

__all__ = [
    "ApiError",
    "MeetupApiClient",
    "ConnectionStatus",
    "RealtimeConnection",
    "EtaRefreshScheduler",
    "ParticipantEta",
    "RosterEntry",
    "EventStateSync",
    "GeolocationError",
    "LocationReporter",
    "Position",
]
