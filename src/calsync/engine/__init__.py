"""Google Calendar incremental sync engine."""

from calsync.engine.models import (
    CalendarEvent,
    ConnectResult,
    DayView,
    EngineStatus,
    SyncResult,
    TokenSet,
)
from calsync.engine.poller import SyncPoller
from calsync.engine.sync import STATE_KEY, CalendarSyncEngine

__all__ = [
    "STATE_KEY",
    "CalendarEvent",
    "CalendarSyncEngine",
    "ConnectResult",
    "DayView",
    "EngineStatus",
    "SyncPoller",
    "SyncResult",
    "TokenSet",
]
