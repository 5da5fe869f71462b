"""Shared fixtures and fakes for the calsync test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from calsync.config import CalsyncConfig, OAuthConfig, SyncConfig
from calsync.core.state import MemoryStateStore
from calsync.engine.models import AuthResult, EventsListRequest, EventsPage

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedLister:
    """EventsLister fake returning queued pages and recording every request.

    Each queued entry is an ``EventsPage``, a body dict (served as HTTP 200),
    or a callable taking the request and returning either of those.
    """

    def __init__(self, *pages: Any) -> None:
        self.pages: list[Any] = list(pages)
        self.requests: list[EventsListRequest] = []

    def queue(self, *pages: Any) -> None:
        self.pages.extend(pages)

    async def list_events(self, request: EventsListRequest) -> EventsPage:
        self.requests.append(request)
        if not self.pages:
            raise AssertionError(f"unexpected events request: {request!r}")
        page = self.pages.pop(0)
        if callable(page):
            page = page(request)
        if isinstance(page, EventsPage):
            return page
        return EventsPage(status_code=200, body=page)


class ScriptedChannel:
    """AuthResultChannel fake returning queued results, then ``pending`` forever."""

    def __init__(self, *results: AuthResult) -> None:
        self.results = list(results)
        self.polled_states: list[str] = []

    async def poll_result(self, state: str) -> AuthResult:
        self.polled_states.append(state)
        if self.results:
            return self.results.pop(0)
        return AuthResult(status="pending")


def google_event(
    event_id: str,
    *,
    start: str = "2026-03-01T10:00:00Z",
    end: str | None = None,
    status: str = "confirmed",
    summary: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """A provider event item; ``start`` may be a dateTime or a YYYY-MM-DD date."""
    key = "date" if len(start) == 10 else "dateTime"
    item: dict[str, Any] = {
        "id": event_id,
        "status": status,
        "summary": summary or f"Event {event_id}",
        "start": {key: start},
        **extra,
    }
    if end is not None:
        item["end"] = {key: end}
    return item


def events_body(
    *items: dict[str, Any],
    next_page_token: str | None = None,
    next_sync_token: str | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"kind": "calendar#events", "items": list(items)}
    if next_page_token is not None:
        body["nextPageToken"] = next_page_token
    if next_sync_token is not None:
        body["nextSyncToken"] = next_sync_token
    return body


def token_response(
    access_token: str = "access-1",
    *,
    refresh_token: str | None = "refresh-1",
    expires_in: int = 3600,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "access_token": access_token,
        "expires_in": expires_in,
        "scope": "https://www.googleapis.com/auth/calendar.readonly",
        "token_type": "Bearer",
    }
    if refresh_token is not None:
        payload["refresh_token"] = refresh_token
    return payload


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def config() -> CalsyncConfig:
    return CalsyncConfig(
        oauth=OAuthConfig(client_id="test-client-id", auth_poll_interval=1.0, auth_timeout=5.0),
        sync=SyncConfig(calendar_id="primary", reference_timezone="UTC"),
    )


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def lister() -> ScriptedLister:
    return ScriptedLister()


@pytest.fixture
def exchanger() -> AsyncMock:
    mock = AsyncMock()
    mock.exchange_token.return_value = token_response()
    return mock


@pytest.fixture
def opener() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def no_sleep() -> Callable[[float], Any]:
    return AsyncMock()
