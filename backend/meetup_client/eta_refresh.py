"""
Roster-wide ETA refresh.

This module provides:
- RosterEntry: a participant and their last known position
- ParticipantEta: distance, ETA, leave-by and status for one participant
- EtaRefreshScheduler: recomputes the whole roster through the directions
  API, at most once per refresh interval unless forced or the roster changed

Gateway calls are made one at a time with a short pause in between, so a
roster of N participants with positions costs N calls per pass.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from common.utils import (
    LeaveByDeadline,
    ParticipantStatus,
    classify_status,
    compute_leave_by,
    distance_km,
)

logger = logging.getLogger(__name__)

# get_directions(origin, destination, mode) -> {"duration": s, "distance": m, ...} | None
DirectionsFn = Callable[[str, str, str], Optional[Mapping[str, Any]]]


@dataclass(frozen=True)
class RosterEntry:
    participant_id: str
    lat: Optional[float] = None
    lng: Optional[float] = None

    @property
    def has_position(self) -> bool:
        return self.lat is not None and self.lng is not None


@dataclass
class ParticipantEta:
    participant_id: str
    status: ParticipantStatus
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    deadline: Optional[LeaveByDeadline] = None

    @property
    def leave_by(self) -> Optional[datetime]:
        return self.deadline.leave_by if self.deadline else None

    @property
    def should_leave_now(self) -> bool:
        return bool(self.deadline and self.deadline.should_leave_now)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EtaRefreshScheduler:
    """
    Args:
        get_directions: Directions lookup, returns the wire dict or None
        event_datetime: Event start (timezone aware)
        event_lat: Event latitude, if known
        event_lng: Event longitude, if known
        event_location: Free-text destination used when there are no coordinates
        refresh_interval: Minimum seconds between unforced passes
        call_delay: Pause between consecutive gateway calls
        mode: Travel mode passed to the gateway
        clock: Monotonic seconds, for throttling and staleness
        now: Wall clock, for leave-by deadlines
        sleep: Used for the inter-call pause
    """

    def __init__(
        self,
        get_directions: DirectionsFn,
        event_datetime: datetime,
        event_lat: Optional[float] = None,
        event_lng: Optional[float] = None,
        event_location: str = "",
        refresh_interval: float = 60.0,
        call_delay: float = 0.2,
        mode: str = "driving",
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.get_directions = get_directions
        self.event_datetime = event_datetime
        self.event_lat = event_lat
        self.event_lng = event_lng
        self.event_location = event_location
        self.refresh_interval = refresh_interval
        self.call_delay = call_delay
        self.mode = mode
        self.clock = clock
        self.now = now
        self.sleep = sleep

        self.results: Dict[str, ParticipantEta] = {}
        self.is_calculating = False
        self.last_refresh_at: Optional[float] = None
        self.last_success_at: Optional[float] = None

        self._roster: List[RosterEntry] = []
        self._roster_changed = False
        self._lock = threading.Lock()

    @property
    def has_event_coordinates(self) -> bool:
        return self.event_lat is not None and self.event_lng is not None

    @property
    def destination(self) -> str:
        if self.has_event_coordinates:
            return f"{self.event_lat},{self.event_lng}"
        return self.event_location

    # ---------------------- Roster ----------------------

    def set_roster(self, entries: Iterable[RosterEntry]) -> None:
        """Replace the roster. A change in membership makes the next refresh unthrottled."""
        entries = list(entries)
        old_ids = {entry.participant_id for entry in self._roster}
        new_ids = {entry.participant_id for entry in entries}
        if old_ids != new_ids:
            self._roster_changed = True
        self._roster = entries

    # ---------------------- Refresh ----------------------

    def is_throttled(self) -> bool:
        if self._roster_changed or self.last_refresh_at is None:
            return False
        return self.clock() - self.last_refresh_at < self.refresh_interval

    def refresh(self, force: bool = False) -> bool:
        """
        Recompute every participant.

        Returns:
            True if a pass ran, False if it was throttled or one is in flight
        """
        with self._lock:
            if self.is_calculating:
                return False
            if not force and self.is_throttled():
                return False
            self.is_calculating = True
            roster = list(self._roster)
            self._roster_changed = False

        try:
            results, failures = self._compute(roster)
        finally:
            self.is_calculating = False

        self.results = results
        self.last_refresh_at = self.clock()
        if failures == 0:
            self.last_success_at = self.last_refresh_at
        logger.debug("ETA refresh covered %s participant(s), %s failure(s)", len(roster), failures)
        return True

    def _compute(self, roster: List[RosterEntry]):
        results: Dict[str, ParticipantEta] = {}
        failures = 0
        calls = 0
        now = self.now()

        for entry in roster:
            if not entry.has_position:
                results[entry.participant_id] = ParticipantEta(
                    participant_id=entry.participant_id,
                    status=ParticipantStatus.FAR,
                )
                continue

            if calls:
                self.sleep(self.call_delay)
            calls += 1

            directions = self._lookup(entry)
            if directions is None:
                failures += 1

            results[entry.participant_id] = self._estimate(entry, directions, now)

        return results, failures

    def _lookup(self, entry: RosterEntry) -> Optional[Mapping[str, Any]]:
        try:
            return self.get_directions(f"{entry.lat},{entry.lng}", self.destination, self.mode)
        except Exception as e:
            logger.warning("Directions lookup failed for %s: %s", entry.participant_id, e)
            return None

    def _estimate(
        self,
        entry: RosterEntry,
        directions: Optional[Mapping[str, Any]],
        now: datetime,
    ) -> ParticipantEta:
        distance = None
        if self.has_event_coordinates:
            distance = distance_km(entry.lat, entry.lng, self.event_lat, self.event_lng)

        eta = None
        if directions is not None:
            eta = round(directions["duration"] / 60)
            if distance is None:
                distance = directions["distance"] / 1000

        status = classify_status(distance) if distance is not None else ParticipantStatus.FAR
        deadline = compute_leave_by(self.event_datetime, eta, now) if eta is not None else None

        return ParticipantEta(
            participant_id=entry.participant_id,
            status=status,
            distance_km=distance,
            eta_minutes=eta,
            deadline=deadline,
        )

    # ---------------------- Between refreshes ----------------------

    def tick(self, now: Optional[datetime] = None) -> None:
        """Re-evaluate should-leave deadlines against the clock; no gateway calls."""
        now = now or self.now()
        for result in self.results.values():
            if result.deadline is not None and result.eta_minutes is not None:
                result.deadline = compute_leave_by(self.event_datetime, result.eta_minutes, now)

    def is_stale(self) -> bool:
        """Last fully successful pass is older than the refresh interval."""
        if self.last_success_at is None:
            return True
        return self.clock() - self.last_success_at > self.refresh_interval
