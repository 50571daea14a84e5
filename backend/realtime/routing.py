"""WebSocket URL routing for the realtime app."""

from django.urls import re_path

from services.tracking import LocationUpdatePipeline
from .consumers.event_consumer import EventConsumer
from .registry import ConnectionRegistry, get_connection_registry


def get_websocket_urlpatterns(registry: ConnectionRegistry = None, pipeline: LocationUpdatePipeline = None):
    """
    Build the WebSocket routes around one registry and one pipeline.

    Both are shared by every socket of the process so room broadcasts and
    per-participant update ordering span all connections.
    """
    registry = registry or get_connection_registry()
    pipeline = pipeline or LocationUpdatePipeline(registry=registry)

    return [
        # Event room endpoint
        # URL: ws://localhost:8000/ws/events/?token=<jwt>&eventId=<uuid>
        re_path(
            r"ws/events/$",
            EventConsumer.as_asgi(registry=registry, pipeline=pipeline),
            name="event-ws"
        ),
    ]
