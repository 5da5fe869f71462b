"""In-memory event projection keyed by id, ordered by resolved start instant."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, tzinfo

from calsync.engine.models import CalendarEvent, EventChange, EventStatus, EventTombstone


class EventCache:
    """Live events of one calendar.

    Cancelled events are never stored. Iteration order is by start instant
    (all-day dates resolved in ``reference_tz`` when they carry no zone),
    with equal starts ordered by event id.
    """

    def __init__(self, reference_tz: tzinfo, events: Iterable[CalendarEvent] = ()) -> None:
        self._reference_tz = reference_tz
        self._events: dict[str, CalendarEvent] = {}
        self._ordered: list[CalendarEvent] | None = None
        self.replace(events)

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    def get(self, event_id: str) -> CalendarEvent | None:
        return self._events.get(event_id)

    def _sort_key(self, event: CalendarEvent) -> tuple[datetime, str]:
        return event.start_instant(self._reference_tz), event.id

    def replace(self, events: Iterable[CalendarEvent]) -> None:
        """Drop everything and load *events* (cancelled ones are filtered)."""
        self._events = {
            event.id: event for event in events if event.status != EventStatus.cancelled
        }
        self._ordered = None

    def upsert(self, events: Iterable[CalendarEvent]) -> int:
        """Insert or overwrite *events* by id; never removes other entries."""
        count = 0
        for event in events:
            if event.status != EventStatus.cancelled:
                self._events[event.id] = event
                count += 1
        self._ordered = None
        return count

    def apply(self, changes: Iterable[EventChange]) -> tuple[int, int]:
        """Merge a delta change list in order. Returns ``(upserted, removed)``."""
        upserted = removed = 0
        for change in changes:
            if isinstance(change, EventTombstone) or change.status == EventStatus.cancelled:
                if self._events.pop(change.id, None) is not None:
                    removed += 1
            else:
                self._events[change.id] = change
                upserted += 1
        self._ordered = None
        return upserted, removed

    def events(self) -> list[CalendarEvent]:
        if self._ordered is None:
            self._ordered = sorted(self._events.values(), key=self._sort_key)
        return list(self._ordered)

    def for_date(self, day: date) -> list[CalendarEvent]:
        """Events whose start falls on *day* in the reference timezone."""
        key = day.isoformat()
        return [event for event in self.events() if event.date_key(self._reference_tz) == key]
