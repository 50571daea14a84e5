"""
Canonical event state on the client.

The REST event fetch is the single source of truth. Broadcasts on the
socket only say "something changed": they mark the state dirty and the
sync worker re-fetches on its next pass, so a burst costs one fetch.
A reconnect also marks it dirty since broadcasts sent while offline are
lost, and the worker resyncs every `resync_interval` regardless.

Socket listeners never do network work themselves; they run on the
socket's dispatch thread.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .api import ApiError, MeetupApiClient
from .connection import ConnectionStatus, RealtimeConnection
from .eta_refresh import EtaRefreshScheduler, RosterEntry
from .location_reporter import LocationReporter

logger = logging.getLogger(__name__)

INVALIDATING_EVENTS = ("eta_updated", "participant_joined", "participant_left")


def roster_from_state(state: Dict[str, Any]) -> List[RosterEntry]:
    return [
        RosterEntry(
            participant_id=str(p["user"]["id"]),
            lat=p.get("last_lat"),
            lng=p.get("last_lng"),
        )
        for p in state.get("participants", [])
    ]


class EventStateSync:
    """
    Keeps one event's state current and feeds the reporter and scheduler.

    Args:
        api: REST client with a token set
        event_id: Event to follow
        connection: Socket whose broadcasts invalidate the state
        reporter: Told whether the user is a participant
        scheduler: Receives the roster after every fetch; built on first
            fetch when omitted
        tick_interval: Seconds between worker passes
        resync_interval: Full re-fetch at least this often (seconds)
        clock: Monotonic seconds
    """

    def __init__(
        self,
        api: MeetupApiClient,
        event_id: str,
        connection: Optional[RealtimeConnection] = None,
        reporter: Optional[LocationReporter] = None,
        scheduler: Optional[EtaRefreshScheduler] = None,
        tick_interval: float = 1.0,
        resync_interval: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.event_id = event_id
        self.connection = connection
        self.reporter = reporter
        self.scheduler = scheduler
        self.tick_interval = tick_interval
        self.resync_interval = resync_interval
        self.clock = clock

        self.state: Optional[Dict[str, Any]] = None
        self.deleted = False

        self._fetch_lock = threading.Lock()
        self._last_fetch_at: Optional[float] = None
        self._was_disconnected = False

        self._dirty = threading.Event()
        self._wake = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

        if connection is not None:
            connection.add_message_listener(self.handle_message)
            connection.add_status_listener(self.handle_status)

    def open(self, join: bool = True) -> Dict[str, Any]:
        """Fetch the event and, if asked, make sure the user is on the roster."""
        state = self.refresh()
        if join and not state.get("is_participant"):
            self.api.join_event(self.event_id)
            state = self.refresh()
        return state

    # ---------------------- Fetching ----------------------

    @property
    def is_dirty(self) -> bool:
        return self._dirty.is_set()

    def invalidate(self) -> None:
        """Ask the worker for a re-fetch on its next pass."""
        self._dirty.set()
        self._wake.set()

    def resync_due(self) -> bool:
        if self._last_fetch_at is None:
            return True
        return self.clock() - self._last_fetch_at >= self.resync_interval

    def refresh(self) -> Optional[Dict[str, Any]]:
        """Re-fetch the event now. Blocks; call from the worker or before start()."""
        with self._fetch_lock:
            self._dirty.clear()
            try:
                self._fetch()
            except Exception:
                # Invalidations seen before the failure still need a fetch
                self._dirty.set()
                raise
            self._last_fetch_at = self.clock()
        return self.state

    def _fetch(self) -> None:
        try:
            state = self.api.get_event(self.event_id)
        except ApiError as e:
            if e.status_code == 404:
                self._mark_deleted()
                return
            raise

        self.state = state
        if self.reporter is not None:
            self.reporter.set_participant(bool(state.get("is_participant")))
        self._update_scheduler(state)

    def _update_scheduler(self, state: Dict[str, Any]) -> None:
        if self.scheduler is None:
            self.scheduler = EtaRefreshScheduler(
                get_directions=self.api.get_directions,
                event_datetime=datetime.fromisoformat(state["datetime"].replace("Z", "+00:00")),
                event_lat=state.get("location_lat"),
                event_lng=state.get("location_lng"),
                event_location=state.get("location", ""),
            )
        self.scheduler.set_roster(roster_from_state(state))
        self.scheduler.refresh()

    def _mark_deleted(self) -> None:
        self.deleted = True
        self.state = None
        self._dirty.clear()
        if self.reporter is not None:
            self.reporter.set_participant(False)
        logger.info("Event %s no longer exists", self.event_id)

    # ---------------------- Worker ----------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> None:
        """
        One worker pass: re-fetch when dirty or due for a resync, otherwise
        let the scheduler run its (throttled) refresh; then move the
        should-leave deadlines along with the clock.
        """
        if self.deleted:
            return
        if self.is_dirty or self.resync_due():
            self.refresh()
        elif self.scheduler is not None:
            self.scheduler.refresh()

        if self.scheduler is not None and not self.deleted:
            self.scheduler.tick()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="event-sync",
                daemon=True,
            )
            self._thread.start()
        logger.info(
            "Starting event sync for %s (tick=%ss resync=%ss)",
            self.event_id,
            self.tick_interval,
            self.resync_interval,
        )

    def stop(self, wait: bool = True) -> None:
        """Stop the worker. Safe to call repeatedly and from any thread."""
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None

        if stop_event is None:
            return
        stop_event.set()
        self._wake.set()
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.tick_interval + 1)
        logger.info("Event sync stopped for %s", self.event_id)

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Event sync for %s encountered an error", self.event_id)
            self._wake.wait(self.tick_interval)
            self._wake.clear()

    # ---------------------- Socket listeners ----------------------

    def handle_message(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type == "event_deleted":
            self._mark_deleted()
        elif msg_type in INVALIDATING_EVENTS and not self.deleted:
            self.invalidate()

    def handle_status(self, status: ConnectionStatus) -> None:
        if status == ConnectionStatus.CONNECTED:
            if self._was_disconnected and not self.deleted:
                logger.info("Reconnected, resyncing event %s", self.event_id)
                self.invalidate()
            self._was_disconnected = False
        elif status in (ConnectionStatus.DISCONNECTED, ConnectionStatus.RECONNECTING):
            self._was_disconnected = True
