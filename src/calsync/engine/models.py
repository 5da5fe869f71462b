"""Data model shared by the sync engine, its collaborators and the backend.

Google payload shapes (``dateTime``, ``timeZone``, ``htmlLink`` ...) are
accepted through field aliases, so provider items validate directly into
``CalendarEvent`` and persisted events round-trip in the same shape.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, time, timedelta, tzinfo
from datetime import date as date_type
from enum import StrEnum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from calsync.core.timeutil import coerce_zoneinfo, date_key, parse_google_datetime
from calsync.errors import TokenError

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"
DEFAULT_EXPIRES_IN_SECONDS = 3600


def _coerce_epoch_millis(value: Any) -> Any:
    """Accept legacy epoch-millisecond timestamps alongside ISO strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    return value


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenSet(BaseModel):
    """Access/refresh token pair with an absolute, margin-adjusted expiry."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime
    scope: str | None = None
    token_type: str | None = None

    @field_validator("expires_at", mode="before")
    @classmethod
    def _normalize_expires_at(cls, value: Any) -> Any:
        return _coerce_epoch_millis(value)

    @field_validator("expires_at")
    @classmethod
    def _ensure_expires_at_aware(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at

    @classmethod
    def from_token_response(
        cls,
        payload: Any,
        *,
        previous: TokenSet | None,
        now: datetime,
        safety_margin: timedelta,
    ) -> TokenSet:
        """Build a TokenSet from a provider token response.

        ``expires_at`` is ``now + expires_in - safety_margin``, never earlier
        than ``now``. A response without ``refresh_token`` keeps the previous
        one.
        """
        if not isinstance(payload, dict):
            raise TokenError("Token response has an unexpected payload shape")

        access_token = _optional_text(payload.get("access_token"))
        if access_token is None:
            raise TokenError("Token response is missing a non-empty access_token")

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        expires_at = max(now, now + timedelta(seconds=expires_in) - safety_margin)

        refresh_token = _optional_text(payload.get("refresh_token"))
        if refresh_token is None and previous is not None:
            refresh_token = previous.refresh_token

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scope=_optional_text(payload.get("scope")),
            token_type=_optional_text(payload.get("token_type")),
        )

    def __repr__(self) -> str:
        return (
            f"TokenSet("
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at.isoformat()!r}, "
            f"scope={self.scope!r})"
        )

    # Pydantic's default __str__ would expose field values verbatim.
    __str__ = __repr__


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventStatus(StrEnum):
    """Event lifecycle states as reported by the provider."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class TimePoint(BaseModel):
    """Either an all-day date or a precise date-time, as Google encodes them."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    all_day: date_type | None = Field(default=None, alias="date")
    date_time: datetime | None = Field(default=None, alias="dateTime")
    time_zone: str | None = Field(default=None, alias="timeZone")

    @field_validator("date_time", mode="before")
    @classmethod
    def _parse_date_time(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_google_datetime(value)
        return value

    @field_validator("date_time")
    @classmethod
    def _ensure_date_time_aware(cls, value: datetime | None) -> datetime | None:
        return _ensure_aware(value)

    @model_validator(mode="after")
    def _validate_shape(self) -> TimePoint:
        if self.all_day is None and self.date_time is None:
            raise ValueError("time point requires either date or dateTime")
        return self

    @property
    def is_all_day(self) -> bool:
        return self.date_time is None

    def resolve(self, fallback_tz: tzinfo) -> datetime:
        """Absolute instant of this time point.

        All-day dates resolve to midnight in their own timezone, or in
        *fallback_tz* when none (or an unknown one) is attached.
        """
        if self.date_time is not None:
            return self.date_time
        if self.all_day is None:
            raise ValueError("time point has neither date nor dateTime")
        return datetime.combine(
            self.all_day, time.min, tzinfo=coerce_zoneinfo(self.time_zone, fallback_tz)
        )

    def date_key(self, reference_tz: tzinfo) -> str:
        return date_key(self.resolve(reference_tz), reference_tz)


class CalendarEvent(BaseModel):
    """A live (non-cancelled) calendar event as held in the cache."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(min_length=1)
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    html_link: str | None = Field(default=None, alias="htmlLink")
    status: EventStatus = EventStatus.confirmed
    start: TimePoint
    end: TimePoint | None = None
    updated: datetime | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if value is None:
            return EventStatus.confirmed
        if isinstance(value, str):
            normalized = value.strip().lower()
            try:
                return EventStatus(normalized)
            except ValueError:
                logger.debug("Unknown event status %r; treating as confirmed", value)
                return EventStatus.confirmed
        return value

    @field_validator("updated", mode="before")
    @classmethod
    def _normalize_updated(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def start_instant(self, reference_tz: tzinfo) -> datetime:
        return self.start.resolve(reference_tz)

    def date_key(self, reference_tz: tzinfo) -> str:
        return self.start.date_key(reference_tz)


class EventTombstone(BaseModel):
    """Deletion signal for an event id (provider status ``cancelled``)."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)


EventChange = CalendarEvent | EventTombstone


# ---------------------------------------------------------------------------
# Cursor and persisted record
# ---------------------------------------------------------------------------


class SyncCursor(BaseModel):
    """Delta cursor for one calendar. A present token means the next fetch is a delta."""

    model_config = ConfigDict(extra="ignore")

    calendar_id: str = DEFAULT_CALENDAR_ID
    sync_token: str | None = None
    last_sync_at: datetime | None = None

    @property
    def requires_full_sync(self) -> bool:
        return self.sync_token is None


class StoredState(BaseModel):
    """The single record persisted in the key-value store."""

    model_config = ConfigDict(extra="ignore")

    tokens: TokenSet | None = None
    calendar_id: str = DEFAULT_CALENDAR_ID
    sync_token: str | None = None
    last_sync_at: datetime | None = None
    events: list[CalendarEvent] | None = None

    @field_validator("last_sync_at", mode="before")
    @classmethod
    def _normalize_last_sync_at(cls, value: Any) -> Any:
        return _coerce_epoch_millis(value)

    @field_validator("last_sync_at")
    @classmethod
    def _ensure_last_sync_at_aware(cls, value: datetime | None) -> datetime | None:
        return _ensure_aware(value)

    @field_validator("calendar_id", mode="before")
    @classmethod
    def _default_calendar_id(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_CALENDAR_ID
        return value

    @model_validator(mode="after")
    def _drop_orphan_cursor(self) -> StoredState:
        # A cursor is only meaningful together with the projection it was issued for.
        if self.sync_token is not None and self.events is None:
            logger.info("Stored sync token has no persisted events; next sync will be full")
            self.sync_token = None
        return self

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Engine status and operation results
# ---------------------------------------------------------------------------


class EngineStatus(StrEnum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    error = "error"


class SyncMode(StrEnum):
    full = "full"
    delta = "delta"


class SyncOutcome(StrEnum):
    ok = "ok"
    skipped = "skipped"
    error = "error"


class SyncResult(BaseModel):
    """Outcome of one ``sync_now()`` call."""

    outcome: SyncOutcome
    mode: SyncMode | None = None
    upserted: int = 0
    removed: int = 0
    pages: int = 0
    full_resync: bool = False
    error: str | None = None


class DayView(BaseModel):
    """Events of one date, computed from the global cache."""

    date: date_type
    events: list[CalendarEvent] = Field(default_factory=list)
    refreshed: bool = False
    error: str | None = None


class ConnectResult(BaseModel):
    status: EngineStatus
    error: str | None = None
    sync: SyncResult | None = None


# ---------------------------------------------------------------------------
# Collaborator wire shapes (camelCase on the wire)
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AuthResult(_CamelModel):
    """Redirect-result channel answer for one ``state``."""

    status: Literal["pending", "complete", "error"]
    code: str | None = None
    error: str | None = None


class TokenExchangeRequest(_CamelModel):
    """Token-exchange proxy request (authorization-code or refresh grant)."""

    grant_type: Literal["authorization_code", "refresh_token"]
    code: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None
    redirect_uri: str
    client_id: str = Field(min_length=1)
    client_secret: str | None = None

    @model_validator(mode="after")
    def _validate_grant_fields(self) -> TokenExchangeRequest:
        if self.grant_type == "authorization_code":
            if not self.code or not self.code_verifier:
                raise ValueError("code and codeVerifier are required for authorization_code")
        elif not self.refresh_token:
            raise ValueError("refreshToken is required for refresh_token")
        return self

    def __repr__(self) -> str:
        return (
            f"TokenExchangeRequest(grant_type={self.grant_type!r}, "
            f"client_id={self.client_id!r}, redirect_uri={self.redirect_uri!r})"
        )

    __str__ = __repr__


class EventsListRequest(_CamelModel):
    """Events-list proxy request: a full range or a sync token, plus paging."""

    access_token: str = Field(min_length=1)
    calendar_id: str = DEFAULT_CALENDAR_ID
    time_min: str | None = None
    time_max: str | None = None
    sync_token: str | None = None
    page_token: str | None = None
    max_results: int | None = Field(default=None, ge=1, le=2500)

    def __repr__(self) -> str:
        return (
            f"EventsListRequest(calendar_id={self.calendar_id!r}, "
            f"time_min={self.time_min!r}, time_max={self.time_max!r}, "
            f"delta={self.sync_token is not None}, page_token={self.page_token!r})"
        )

    __str__ = __repr__


class EventsPage(BaseModel):
    """Raw events-list proxy response."""

    status_code: int
    body: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300
