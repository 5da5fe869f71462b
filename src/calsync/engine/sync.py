"""Calendar sync engine: connection lifecycle, full/delta sync and day selection.

``CalendarSyncEngine`` owns the token manager, the event cache and the delta
cursor for one calendar. Every public operation reports its outcome through
an explicit result object (``ConnectResult``, ``SyncResult``, ``DayView``)
and through ``status`` / ``error``; no exception escapes them.

Sync protocol
-------------
- No cursor: full read of ``[start_of_day(now - past_days),
  end_of_day(now + future_days)]``; the cache is replaced wholesale.
- Cursor present: delta read with the stored sync token; tombstones remove,
  events upsert.
- HTTP 410 (cursor invalidated): the cursor is cleared (and persisted) and
  the sync is re-run once as a full read. A second invalidation is reported
  as an error.

Fetching happens outside the commit lock; only the merge into the cache and
the cursor update run under it, so concurrent commits are serialized and the
last one wins. ``connect()`` and ``disconnect()`` bump a connection
generation; a fetch started under an older generation is discarded at
commit time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import ValidationError

from calsync.config import CalsyncConfig
from calsync.core.state import KeyValueStore
from calsync.core.timeutil import day_window, local_date, sync_window
from calsync.engine.authorization import AuthorizationFlow
from calsync.engine.cache import EventCache
from calsync.engine.collaborators import (
    AuthResultChannel,
    BrowserOpener,
    EventsLister,
    TokenExchanger,
)
from calsync.engine.fetcher import EventsQuery, FetchResult, fetch_all
from calsync.engine.models import (
    CalendarEvent,
    ConnectResult,
    DayView,
    EngineStatus,
    StoredState,
    SyncCursor,
    SyncMode,
    SyncOutcome,
    SyncResult,
    TokenSet,
)
from calsync.engine.tokens import Clock, TokenManager, utcnow
from calsync.errors import (
    AuthError,
    CalendarSyncError,
    PersistenceError,
    SyncTokenExpiredError,
    sanitize_error_message,
)

if TYPE_CHECKING:
    from calsync.engine.poller import SyncPoller

logger = logging.getLogger(__name__)

STATE_KEY = "calsync::google_calendar"


class CalendarSyncEngine:
    """Keeps a local projection of one Google calendar in sync.

    All collaborators are injected; nothing is global. Call ``load()`` once
    to restore persisted state, ``connect()`` to authorize, ``sync_now()``
    (directly or through a poller) to refresh and ``dispose()`` when done.
    """

    def __init__(
        self,
        config: CalsyncConfig,
        *,
        store: KeyValueStore,
        exchanger: TokenExchanger,
        lister: EventsLister,
        channel: AuthResultChannel,
        opener: BrowserOpener,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._store = store
        self._lister = lister
        self._clock = clock
        self._tz = config.sync.tzinfo
        margin = timedelta(seconds=config.sync.token_safety_margin)

        self._tokens = TokenManager(
            exchanger,
            config.oauth,
            clock=clock,
            safety_margin=margin,
            on_tokens_changed=self._on_tokens_changed,
        )
        self._authorization = AuthorizationFlow(
            config.oauth,
            opener=opener,
            channel=channel,
            exchanger=exchanger,
            clock=clock,
            safety_margin=margin,
            sleep=sleep,
            monotonic=monotonic,
        )
        self._cache = EventCache(self._tz)
        self._cursor = SyncCursor(calendar_id=config.sync.calendar_id)
        self._commit_lock = asyncio.Lock()
        self._sync_in_flight = False
        self._sync_idle = asyncio.Event()
        self._sync_idle.set()
        self._generation = 0
        self._disposed = False
        self._poller: SyncPoller | None = None

        self._status = EngineStatus.disconnected
        self._error: str | None = None
        self._selected_date: date | None = None
        self._selected_events: list[CalendarEvent] = []

    # ------------------------------------------------------------------
    # Produced interface
    # ------------------------------------------------------------------

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def calendar_id(self) -> str:
        return self._cursor.calendar_id

    @property
    def cursor(self) -> SyncCursor:
        return self._cursor

    @property
    def last_sync_at(self) -> datetime | None:
        return self._cursor.last_sync_at

    @property
    def tokens(self) -> TokenSet | None:
        return self._tokens.tokens

    @property
    def is_connected(self) -> bool:
        return self._tokens.tokens is not None

    @property
    def events(self) -> list[CalendarEvent]:
        return self._cache.events()

    def events_for(self, day: date) -> list[CalendarEvent]:
        return self._cache.for_date(day)

    @property
    def selected_date(self) -> date | None:
        return self._selected_date

    @property
    def selected_events(self) -> list[CalendarEvent]:
        return list(self._selected_events)

    def today(self) -> date:
        return local_date(self._clock(), self._tz)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore tokens, cursor and cached events from the key-value store."""
        try:
            raw = await self._store.get(STATE_KEY)
        except PersistenceError as exc:
            logger.warning("Failed to load persisted calendar state: %s", exc)
            return
        if raw is None:
            return

        try:
            stored = StoredState.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "Discarding persisted calendar state: %d validation error(s)", exc.error_count()
            )
            return

        calendar_id = self._config.sync.calendar_id
        async with self._commit_lock:
            self._tokens.set_tokens(stored.tokens)
            if stored.calendar_id == calendar_id:
                self._cursor = SyncCursor(
                    calendar_id=calendar_id,
                    sync_token=stored.sync_token,
                    last_sync_at=stored.last_sync_at,
                )
                self._cache.replace(stored.events or [])
            else:
                logger.info(
                    "Persisted state belongs to calendar %s; next sync of %s will be full",
                    stored.calendar_id,
                    calendar_id,
                )
                self._cursor = SyncCursor(calendar_id=calendar_id)
                self._cache.replace([])
            self._status = (
                EngineStatus.connected if stored.tokens is not None else EngineStatus.disconnected
            )
            self._error = None

        logger.info(
            "Loaded calendar state (connected=%s, events=%d, cursor=%s)",
            stored.tokens is not None,
            len(self._cache),
            "present" if self._cursor.sync_token else "absent",
        )

    async def connect(self) -> ConnectResult:
        """Authorize interactively, then run a full sync and select today."""
        if self._disposed:
            return ConnectResult(status=self._status, error="Engine has been disposed")
        if self._status == EngineStatus.connecting:
            return ConnectResult(status=self._status, error="Authorization already in progress")

        self._status = EngineStatus.connecting
        self._error = None
        try:
            tokens = await self._authorization.run()
        except AuthError as exc:
            logger.warning("Google Calendar authorization failed: %s", exc)
            self._set_error(exc)
            return ConnectResult(status=self._status, error=self._error)
        except Exception as exc:
            logger.error("Unexpected authorization failure: %s", exc, exc_info=True)
            self._set_error(exc)
            return ConnectResult(status=self._status, error=self._error)

        async with self._commit_lock:
            # New grant: the previous projection may belong to another account.
            self._generation += 1
            self._tokens.set_tokens(tokens)
            self._cursor = SyncCursor(calendar_id=self._config.sync.calendar_id)
            self._cache.replace([])
            self._status = EngineStatus.connected
            self._error = None
        await self._persist()

        # A round from the previous grant will discard its result; let it finish.
        await self._sync_idle.wait()
        sync = await self.sync_now()
        await self.select_date(self.today())
        if self._poller is not None:
            self._poller.trigger()
        return ConnectResult(status=self._status, error=self._error, sync=sync)

    async def disconnect(self) -> None:
        """Forget tokens, cursor and cache, and remove the persisted record."""
        async with self._commit_lock:
            self._generation += 1
            self._tokens.clear()
            self._cursor = SyncCursor(calendar_id=self._config.sync.calendar_id)
            self._cache.replace([])
            self._selected_events = []
            self._status = EngineStatus.disconnected
            self._error = None
            try:
                await self._store.set(STATE_KEY, None)
            except PersistenceError as exc:
                logger.warning("Failed to clear persisted calendar state: %s", exc)
        logger.info("Disconnected from Google Calendar")

    def attach_poller(self, poller: SyncPoller) -> None:
        self._poller = poller

    async def dispose(self) -> None:
        """Stop the attached poller; later operations become no-ops."""
        self._disposed = True
        if self._poller is not None:
            await self._poller.stop()
            self._poller = None

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_now(self) -> SyncResult:
        """Run one sync round. Overlapping calls return ``outcome=skipped``."""
        if self._disposed or not self.is_connected:
            return SyncResult(outcome=SyncOutcome.skipped)
        if self._sync_in_flight:
            logger.debug("Sync already in flight; skipping")
            return SyncResult(outcome=SyncOutcome.skipped)

        self._sync_in_flight = True
        self._sync_idle.clear()
        try:
            return await self._sync_with_recovery()
        finally:
            self._sync_in_flight = False
            self._sync_idle.set()

    async def _sync_with_recovery(self) -> SyncResult:
        try:
            return await self._run_sync(full_resync=False)
        except SyncTokenExpiredError:
            logger.warning(
                "Sync token expired for calendar '%s'; performing full re-sync",
                self._cursor.calendar_id,
            )
        except Exception as exc:
            return self._sync_failed(exc, full_resync=False)

        async with self._commit_lock:
            self._cursor = self._cursor.model_copy(update={"sync_token": None})
        await self._persist()

        try:
            return await self._run_sync(full_resync=True)
        except Exception as exc:
            # A second invalidation is not retried again.
            return self._sync_failed(exc, full_resync=True)

    async def _run_sync(self, *, full_resync: bool) -> SyncResult:
        generation = self._generation
        access_token = await self._tokens.ensure_access_token()
        cursor = self._cursor

        if cursor.requires_full_sync:
            mode = SyncMode.full
            time_min, time_max = sync_window(
                self._clock(),
                self._tz,
                past_days=self._config.sync.past_days,
                future_days=self._config.sync.future_days,
            )
            query = EventsQuery.full_range(cursor.calendar_id, time_min, time_max)
        else:
            mode = SyncMode.delta
            query = EventsQuery.delta(cursor.calendar_id, cursor.sync_token)

        result = await fetch_all(
            self._lister, query, access_token, page_size=self._config.sync.page_size
        )

        async with self._commit_lock:
            if self._generation != generation or not self.is_connected:
                logger.info("Discarding sync result: connection changed while fetching")
                return SyncResult(outcome=SyncOutcome.skipped, mode=mode)
            upserted, removed = self._commit(result, mode=mode, previous=cursor)

        await self._persist()
        logger.info(
            "Calendar sync complete (mode=%s, pages=%d, upserted=%d, removed=%d, events=%d)",
            mode,
            result.pages,
            upserted,
            removed,
            len(self._cache),
        )
        return SyncResult(
            outcome=SyncOutcome.ok,
            mode=mode,
            upserted=upserted,
            removed=removed,
            pages=result.pages,
            full_resync=full_resync,
        )

    def _commit(
        self, result: FetchResult, *, mode: SyncMode, previous: SyncCursor
    ) -> tuple[int, int]:
        if mode == SyncMode.full:
            events = result.events
            self._cache.replace(events)
            upserted, removed = len(events), 0
            next_token = result.next_sync_token
        else:
            upserted, removed = self._cache.apply(result.changes)
            next_token = result.next_sync_token or previous.sync_token

        self._cursor = SyncCursor(
            calendar_id=previous.calendar_id,
            sync_token=next_token,
            last_sync_at=self._clock(),
        )
        self._status = EngineStatus.connected
        self._error = None
        if self._selected_date is not None:
            self._selected_events = self._cache.for_date(self._selected_date)
        return upserted, removed

    def _sync_failed(self, exc: Exception, *, full_resync: bool) -> SyncResult:
        if isinstance(exc, CalendarSyncError):
            logger.warning("Calendar sync failed: %s", exc)
        else:
            logger.error("Unexpected calendar sync failure: %s", exc, exc_info=True)
        self._set_error(exc)
        return SyncResult(outcome=SyncOutcome.error, full_resync=full_resync, error=self._error)

    # ------------------------------------------------------------------
    # Day selection
    # ------------------------------------------------------------------

    async def select_date(self, day: date) -> DayView:
        """Show *day* from the cache, then refresh exactly that day.

        The refresh reads the day independently of the delta cursor and only
        upserts into the cache. On failure the stale view is returned with
        ``error`` set.
        """
        self._selected_date = day
        self._selected_events = self._cache.for_date(day)
        stale = list(self._selected_events)
        if self._disposed or not self.is_connected:
            return DayView(date=day, events=stale)

        generation = self._generation
        try:
            access_token = await self._tokens.ensure_access_token()
            time_min, time_max = day_window(day, self._tz)
            result = await fetch_all(
                self._lister,
                EventsQuery.full_range(self._cursor.calendar_id, time_min, time_max),
                access_token,
                page_size=self._config.sync.page_size,
            )
        except Exception as exc:
            if isinstance(exc, CalendarSyncError):
                logger.warning("Failed to refresh %s: %s", day.isoformat(), exc)
            else:
                logger.error("Unexpected failure refreshing %s: %s", day, exc, exc_info=True)
            self._set_error(exc)
            return DayView(date=day, events=stale, error=self._error)

        async with self._commit_lock:
            if self._generation != generation or not self.is_connected:
                return DayView(date=day, events=stale)
            self._cache.upsert(result.events)
            view = self._cache.for_date(day)
            if self._selected_date == day:
                self._selected_events = view
        await self._persist()
        return DayView(date=day, events=view, refreshed=True)

    # ------------------------------------------------------------------
    # Persistence and status helpers
    # ------------------------------------------------------------------

    def _set_error(self, exc: BaseException) -> None:
        self._status = EngineStatus.error
        self._error = sanitize_error_message(str(exc) or type(exc).__name__)

    def snapshot(self) -> StoredState:
        return StoredState(
            tokens=self._tokens.tokens,
            calendar_id=self._cursor.calendar_id,
            sync_token=self._cursor.sync_token,
            last_sync_at=self._cursor.last_sync_at,
            events=self._cache.events(),
        )

    async def _persist(self) -> None:
        async with self._commit_lock:
            if not self.is_connected:
                return
            record = self.snapshot().to_storage()
            try:
                await self._store.set(STATE_KEY, record)
            except PersistenceError as exc:
                logger.warning("Failed to persist calendar state: %s", exc)

    async def _on_tokens_changed(self, tokens: TokenSet) -> None:
        await self._persist()
