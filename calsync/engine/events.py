"""
Event window helpers: filtering, merging and fingerprinting calendar events.
"""

from datetime import UTC, datetime, timedelta

from calsync.models.domain.calendar_domain import SHOW_AS_BUSY, Event
from calsync.utils.tz import format_utc

STATUS_SYNC_JOB_INTERVAL = timedelta(minutes=5)
CALENDAR_VIEW_TIME_WINDOW = timedelta(minutes=10)

_EPOCH = datetime.min.replace(tzinfo=UTC)


def sort_events(events: list[Event]) -> list[Event]:
    return sorted(events, key=lambda e: e.start_utc() or _EPOCH)


def filter_busy_and_attendee_events(events: list[Event]) -> list[Event]:
    """Keep busy, non-cancelled events that have at least one attendee."""
    # Events without attendees are unlikely to be meetings
    return [e for e in events if e.show_as == SHOW_AS_BUSY and not e.is_cancelled and len(e.attendees) >= 1]


def are_events_mergeable(current: Event, nxt: Event, interval: timedelta = STATUS_SYNC_JOB_INTERVAL) -> bool:
    """
    Two events merge when they overlap, or when the first is no longer than
    one sync interval and the gap to the second is within one sync interval.
    """
    if current.end_utc() >= nxt.start_utc():
        return True
    return current.duration() <= interval and nxt.start_utc() - current.end_utc() <= interval


def get_merged_events(events: list[Event], interval: timedelta = STATUS_SYNC_JOB_INTERVAL) -> list[Event]:
    """
    Merge a start-sorted list into non-overlapping busy windows.

    Returns copies; the input events are left untouched.
    """
    if len(events) <= 1:
        return [e.model_copy() for e in events]

    merged = [events[0].model_copy()]
    for event in events[1:]:
        current = merged[-1]
        if are_events_mergeable(current, event, interval):
            if event.end_utc() > current.end_utc():
                current.end = event.end
        else:
            merged.append(event.model_copy())
    return merged


def event_fingerprint(event: Event) -> str:
    return f"{event.ical_uid} {format_utc(event.start_utc())}"


def event_fingerprints(events: list[Event]) -> list[str]:
    """Fingerprints of the non-cancelled events, in order."""
    return [event_fingerprint(e) for e in events if not e.is_cancelled]


def exclude_declined_events(events: list[Event]) -> list[Event]:
    return [e for e in events if not e.is_declined()]
