"""Leave-by deadline arithmetic for participants heading to an event."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

# Participants aim to arrive this long before the event starts
ARRIVAL_BUFFER = timedelta(minutes=5)


@dataclass(frozen=True)
class LeaveByDeadline:
    target_arrival: datetime
    leave_by: datetime
    should_leave_now: bool

    def minutes_until_leave(self, now: Optional[datetime] = None) -> float:
        """Minutes left before `leave_by`; negative once it has passed."""
        now = now or datetime.now(timezone.utc)
        return (self.leave_by - now).total_seconds() / 60


def compute_leave_by(
    event_datetime: datetime,
    eta_minutes: float,
    now: Optional[datetime] = None,
) -> LeaveByDeadline:
    """
    Work out when a participant has to set off.

    Args:
        event_datetime: Scheduled start of the event
        eta_minutes: Current travel time estimate for the participant
        now: Reference time, defaults to the current time

    Returns:
        LeaveByDeadline with the target arrival, departure deadline and
        whether the deadline has already been reached.
    """
    now = now or datetime.now(timezone.utc)
    target_arrival = event_datetime - ARRIVAL_BUFFER
    leave_by = target_arrival - timedelta(minutes=eta_minutes)
    return LeaveByDeadline(
        target_arrival=target_arrival,
        leave_by=leave_by,
        should_leave_now=now >= leave_by,
    )
