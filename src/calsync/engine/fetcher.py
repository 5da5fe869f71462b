"""Drive one events-list query across every page.

A query is either a full-range read (``time_min`` / ``time_max``) or a delta
read (``sync_token``). Pages are requested until one arrives without
``nextPageToken``; only that terminal page's ``nextSyncToken`` counts.
Failures abort the whole query, so callers never see partial results.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from calsync.core.timeutil import google_rfc3339
from calsync.engine.collaborators import EventsLister
from calsync.engine.models import (
    DEFAULT_CALENDAR_ID,
    CalendarEvent,
    EventChange,
    EventsListRequest,
    EventsPage,
    EventTombstone,
)
from calsync.errors import FetchError, SyncTokenExpiredError, provider_error_message

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 250


@dataclass(frozen=True)
class EventsQuery:
    """Full-range (``time_min``/``time_max``) or delta (``sync_token``) query."""

    calendar_id: str = DEFAULT_CALENDAR_ID
    time_min: datetime | None = None
    time_max: datetime | None = None
    sync_token: str | None = None

    def __post_init__(self) -> None:
        if self.sync_token is None and (self.time_min is None or self.time_max is None):
            raise ValueError("a full-range query requires both time_min and time_max")

    @classmethod
    def full_range(cls, calendar_id: str, time_min: datetime, time_max: datetime) -> EventsQuery:
        return cls(calendar_id=calendar_id, time_min=time_min, time_max=time_max)

    @classmethod
    def delta(cls, calendar_id: str, sync_token: str) -> EventsQuery:
        return cls(calendar_id=calendar_id, sync_token=sync_token)

    @property
    def is_delta(self) -> bool:
        return self.sync_token is not None

    def to_request(
        self, access_token: str, *, page_token: str | None, page_size: int
    ) -> EventsListRequest:
        if self.sync_token is not None:
            return EventsListRequest(
                access_token=access_token,
                calendar_id=self.calendar_id,
                sync_token=self.sync_token,
                page_token=page_token,
                max_results=page_size,
            )
        if self.time_min is None or self.time_max is None:
            raise ValueError("full-range query requires time_min and time_max")
        return EventsListRequest(
            access_token=access_token,
            calendar_id=self.calendar_id,
            time_min=google_rfc3339(self.time_min),
            time_max=google_rfc3339(self.time_max),
            page_token=page_token,
            max_results=page_size,
        )


@dataclass
class FetchResult:
    """Aggregated change list of a query plus the terminal page's sync token."""

    changes: list[EventChange] = field(default_factory=list)
    next_sync_token: str | None = None
    pages: int = 0

    @property
    def events(self) -> list[CalendarEvent]:
        return [change for change in self.changes if isinstance(change, CalendarEvent)]

    @property
    def tombstones(self) -> list[EventTombstone]:
        return [change for change in self.changes if isinstance(change, EventTombstone)]


def parse_event_item(item: Any) -> EventChange | None:
    """Parse one provider item into an event or a tombstone.

    Returns ``None`` (after logging) for malformed items: non-objects, items
    without an id, and live events whose start cannot be parsed.
    """
    if not isinstance(item, dict):
        logger.warning("Skipping non-object event item: %r", type(item).__name__)
        return None

    event_id = item.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        logger.warning("Skipping event item without an id")
        return None
    event_id = event_id.strip()

    status = item.get("status")
    if isinstance(status, str) and status.strip().lower() == "cancelled":
        return EventTombstone(id=event_id)

    try:
        return CalendarEvent.model_validate({**item, "id": event_id})
    except ValidationError as exc:
        logger.warning(
            "Skipping malformed event %s: %d validation error(s)", event_id, exc.error_count()
        )
        return None


def _next_page_token(body: dict[str, Any]) -> str | None:
    """Page token to follow, or ``None`` on the terminal page."""
    return _optional_token(body.get("nextPageToken"))


def _optional_token(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _raise_for_page(page: EventsPage, query: EventsQuery) -> None:
    if page.status_code == 410:
        raise SyncTokenExpiredError(
            f"Sync token expired for calendar '{query.calendar_id}'; full re-sync required"
        )
    if not page.ok:
        raise FetchError(
            status_code=page.status_code,
            message=provider_error_message(page.body),
        )


async def fetch_all(
    lister: EventsLister,
    query: EventsQuery,
    access_token: str,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> FetchResult:
    """Request every page of *query* and return the concatenated change list.

    Raises
    ------
    SyncTokenExpiredError
        When any page answers HTTP 410.
    FetchError
        On any other non-2xx page or when the server repeats a page token.
    """
    result = FetchResult()
    seen_page_tokens: set[str] = set()
    page_token: str | None = None

    while True:
        request = query.to_request(access_token, page_token=page_token, page_size=page_size)
        page = await lister.list_events(request)
        _raise_for_page(page, query)
        result.pages += 1

        items = page.body.get("items")
        if isinstance(items, list):
            for item in items:
                change = parse_event_item(item)
                if change is not None:
                    result.changes.append(change)

        page_token = _next_page_token(page.body)
        if page_token is None:
            result.next_sync_token = _optional_token(page.body.get("nextSyncToken"))
            break

        if page_token in seen_page_tokens:
            raise FetchError(
                status_code=page.status_code,
                message="Google Calendar repeated a page token; aborting pagination",
            )
        seen_page_tokens.add(page_token)

    logger.debug(
        "Fetched %d change(s) over %d page(s) for calendar %s (%s)",
        len(result.changes),
        result.pages,
        query.calendar_id,
        "delta" if query.is_delta else "full",
    )
    return result
