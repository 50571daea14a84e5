"""
Periodic location reporting over the event socket.

The reporter samples the device position every `interval` seconds and
sends it as a `location_update`. Samples are dropped when they are too
inaccurate or too old, and when the device has not moved since the last
emission (within 5 m and 15 s). It only runs while reporting is enabled,
the socket is connected and the user is a participant; the first sample
goes out `start_delay` seconds after those conditions hold.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from common.utils import distance_km
from .connection import ConnectionStatus, RealtimeConnection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Position:
    lat: float
    lng: float
    accuracy: float     # metres, radius of uncertainty
    timestamp: float    # epoch seconds when the fix was taken


class GeolocationError(Exception):
    """Raised by a locate callable when no position is available (denied, unavailable, timeout)."""
    pass


class LocationReporter:
    """
    Args:
        connection: Socket the samples are sent on
        locate: Returns the current Position or raises GeolocationError
        event_id: Event the samples belong to
        interval: Seconds between samples
        accuracy_threshold: Largest accepted accuracy radius (metres)
        max_age: Oldest accepted fix (seconds)
        start_delay: Wait after the socket opens before the first sample
        min_distance_km: Movement below this...
        min_interval: ...within this many seconds of the last emission is not sent
        clock: Returns epoch seconds
    """

    def __init__(
        self,
        connection: RealtimeConnection,
        locate: Callable[[], Position],
        event_id: str,
        interval: float = 10.0,
        accuracy_threshold: float = 50.0,
        max_age: float = 5.0,
        start_delay: float = 1.0,
        min_distance_km: float = 0.005,
        min_interval: float = 15.0,
        clock: Callable[[], float] = time.time,
    ):
        self.connection = connection
        self.locate = locate
        self.event_id = event_id
        self.interval = interval
        self.accuracy_threshold = accuracy_threshold
        self.max_age = max_age
        self.start_delay = start_delay
        self.min_distance_km = min_distance_km
        self.min_interval = min_interval
        self.clock = clock

        self.enabled = False
        self.is_participant = False

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._last_sent: Optional[Position] = None
        self._last_sent_at: Optional[float] = None

        connection.add_status_listener(lambda status: self.sync())

    # ---------------------- Activation ----------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def should_run(self) -> bool:
        return (
            self.enabled
            and self.is_participant
            and self.connection.status == ConnectionStatus.CONNECTED
        )

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        self.sync()

    def set_participant(self, is_participant: bool) -> None:
        self.is_participant = is_participant
        self.sync()

    def sync(self) -> None:
        """Start or stop to match the current conditions. Never waits for the worker."""
        if self.should_run():
            self.start()
        else:
            self.stop(wait=False)

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="location-reporter",
                daemon=True,
            )
            self._thread.start()
        logger.info("Location reporting started for event %s", self.event_id)

    def stop(self, wait: bool = True) -> None:
        """
        Stop sampling and forget the last sample. Safe to call repeatedly.

        With wait=False the worker is only signalled; status listeners use
        this since they run on the socket thread.
        """
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None
            self._last_sent = None
            self._last_sent_at = None

        if stop_event is None:
            return
        stop_event.set()
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1)
        logger.info("Location reporting stopped for event %s", self.event_id)

    def _run(self, stop_event: threading.Event) -> None:
        # Let the handshake settle before the first sample
        if stop_event.wait(self.start_delay):
            return
        self.report_once()
        while not stop_event.wait(self.interval):
            self.report_once()

    # ---------------------- Sampling ----------------------

    def is_acceptable(self, position: Position) -> bool:
        if position.accuracy > self.accuracy_threshold:
            logger.debug("Dropping fix with accuracy %.0fm", position.accuracy)
            return False
        if self.clock() - position.timestamp > self.max_age:
            logger.debug("Dropping stale fix from %.1fs ago", self.clock() - position.timestamp)
            return False
        return True

    def is_redundant(self, position: Position) -> bool:
        """Barely moved and sent recently."""
        if self._last_sent is None or self._last_sent_at is None:
            return False
        moved = distance_km(self._last_sent.lat, self._last_sent.lng, position.lat, position.lng)
        return moved < self.min_distance_km and self.clock() - self._last_sent_at < self.min_interval

    def report_once(self) -> bool:
        """Take one sample and send it if it passes the filters. True when sent."""
        try:
            position = self.locate()
        except GeolocationError as e:
            logger.warning("Skipping location sample: %s", e)
            return False

        if not self.is_acceptable(position) or self.is_redundant(position):
            return False

        sent = self.connection.send_message("location_update", {
            "eventId": self.event_id,
            "lat": position.lat,
            "lng": position.lng,
        })
        if sent:
            self._last_sent = position
            self._last_sent_at = self.clock()
        return sent
