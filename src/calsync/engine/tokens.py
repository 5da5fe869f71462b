"""Access-token lifecycle: hand out the cached token or renew it before expiry."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from calsync.config import OAuthConfig
from calsync.engine.collaborators import TokenExchanger
from calsync.engine.models import TokenExchangeRequest, TokenSet
from calsync.errors import TokenError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
TokensChangedCallback = Callable[[TokenSet], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(UTC)


class TokenManager:
    """Holds the current ``TokenSet`` and refreshes it with the refresh grant.

    Concurrent callers that observe an expired token share a single refresh:
    the refresh runs under a lock and freshness is re-checked once the lock
    is held.
    """

    def __init__(
        self,
        exchanger: TokenExchanger,
        oauth: OAuthConfig,
        *,
        tokens: TokenSet | None = None,
        clock: Clock = utcnow,
        safety_margin: timedelta = timedelta(seconds=60),
        on_tokens_changed: TokensChangedCallback | None = None,
    ) -> None:
        self._exchanger = exchanger
        self._oauth = oauth
        self._tokens = tokens
        self._clock = clock
        self._safety_margin = safety_margin
        self._on_tokens_changed = on_tokens_changed
        self._refresh_lock = asyncio.Lock()

    @property
    def tokens(self) -> TokenSet | None:
        return self._tokens

    def set_tokens(self, tokens: TokenSet | None) -> None:
        self._tokens = tokens

    def clear(self) -> None:
        self._tokens = None

    def issue(self, payload: dict) -> TokenSet:
        """Build a TokenSet from a token response, keeping the known refresh token."""
        return TokenSet.from_token_response(
            payload,
            previous=self._tokens,
            now=self._clock(),
            safety_margin=self._safety_margin,
        )

    async def ensure_access_token(self) -> str:
        tokens = self._tokens
        if tokens is None:
            raise TokenError("not connected")
        if tokens.is_fresh(self._clock()):
            return tokens.access_token

        async with self._refresh_lock:
            tokens = self._tokens
            if tokens is None:
                raise TokenError("not connected")
            if tokens.is_fresh(self._clock()):
                return tokens.access_token

            refreshed = await self._refresh(tokens)
            self._tokens = refreshed
            if self._on_tokens_changed is not None:
                await self._on_tokens_changed(refreshed)
            return refreshed.access_token

    async def _refresh(self, current: TokenSet) -> TokenSet:
        if not current.refresh_token:
            raise TokenError("refresh token missing")
        if not self._oauth.client_id:
            raise TokenError("client not configured")

        logger.info("Access token expired at %s; refreshing", current.expires_at.isoformat())
        payload = await self._exchanger.exchange_token(
            TokenExchangeRequest(
                grant_type="refresh_token",
                refresh_token=current.refresh_token,
                redirect_uri=self._oauth.redirect_uri,
                client_id=self._oauth.client_id,
                client_secret=self._oauth.client_secret,
            )
        )
        refreshed = self.issue(payload)
        logger.info("Access token refreshed; valid until %s", refreshed.expires_at.isoformat())
        return refreshed
