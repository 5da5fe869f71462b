"""OAuth 2.0 authorization-code flow with PKCE over a loopback redirect.

One attempt runs as:

1. generate verifier / challenge / state (single-use, discarded afterwards);
2. open the Google authorization URL in the browser;
3. poll the redirect result channel for ``state`` until a code, an error or
   the wall-clock timeout;
4. exchange code + verifier for tokens (authorization-code grant).

Every failure surfaces as ``AuthError`` with a user-facing message; no tokens
are created on failure.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from urllib.parse import urlencode

from calsync.config import OAuthConfig
from calsync.engine.collaborators import AuthResultChannel, BrowserOpener, TokenExchanger
from calsync.engine.models import TokenExchangeRequest, TokenSet
from calsync.engine.pkce import PKCEPair, new_pkce_pair
from calsync.engine.tokens import Clock, utcnow
from calsync.errors import AuthError, TokenError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "The user denied access. Authorization cancelled.",
    "invalid_request": "The authorization request was malformed. Please try again.",
    "unauthorized_client": "This application is not authorized to use Google OAuth. "
    "Check the OAuth client configuration.",
    "unsupported_response_type": "Unsupported response type. Please try again.",
    "invalid_scope": "One or more requested OAuth scopes are invalid or not permitted.",
    "server_error": "Google encountered an internal error. Please try again.",
    "temporarily_unavailable": "Google OAuth is temporarily unavailable. Please try again later.",
}


def sanitize_provider_error(error: str | None) -> str:
    """Convert a provider error code into a safe, actionable user message."""
    return _KNOWN_PROVIDER_ERRORS.get(
        (error or "").strip(),
        "The authorization failed. Please try again.",
    )


def build_authorization_url(oauth: OAuthConfig, *, state: str, challenge: str) -> str:
    params = {
        "client_id": oauth.client_id,
        "redirect_uri": oauth.redirect_uri,
        "response_type": "code",
        "access_type": "offline",
        "prompt": "consent",  # Force a refresh token on every consent
        "scope": " ".join(oauth.scopes),
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


class AuthorizationFlow:
    """Run one interactive authorization attempt and return the initial tokens."""

    def __init__(
        self,
        oauth: OAuthConfig,
        *,
        opener: BrowserOpener,
        channel: AuthResultChannel,
        exchanger: TokenExchanger,
        clock: Clock = utcnow,
        safety_margin: timedelta = timedelta(seconds=60),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._oauth = oauth
        self._opener = opener
        self._channel = channel
        self._exchanger = exchanger
        self._clock = clock
        self._safety_margin = safety_margin
        self._sleep = sleep
        self._monotonic = monotonic

    async def run(self) -> TokenSet:
        if not self._oauth.client_id:
            raise AuthError("client not configured")

        try:
            pair = new_pkce_pair()
        except (NotImplementedError, OSError) as exc:
            raise AuthError(f"Secure random source unavailable: {exc}") from exc

        url = build_authorization_url(self._oauth, state=pair.state, challenge=pair.challenge)
        logger.info("Starting Google authorization (state=%s...)", pair.state[:8])
        await self._opener.open(url)

        code = await self._wait_for_code(pair)
        return await self._exchange_code(code, pair)

    async def _wait_for_code(self, pair: PKCEPair) -> str:
        deadline = self._monotonic() + self._oauth.auth_timeout
        while True:
            result = await self._channel.poll_result(pair.state)
            if result.status == "complete":
                if not result.code:
                    raise AuthError("Authorization response is missing the code")
                return result.code
            if result.status == "error":
                logger.warning("Google authorization returned an error: %s", result.error)
                raise AuthError(sanitize_provider_error(result.error))
            if self._monotonic() >= deadline:
                logger.warning(
                    "Google authorization timed out after %.0fs", self._oauth.auth_timeout
                )
                raise AuthError("Authorization timed out. Please try again.")
            await self._sleep(self._oauth.auth_poll_interval)

    async def _exchange_code(self, code: str, pair: PKCEPair) -> TokenSet:
        try:
            payload = await self._exchanger.exchange_token(
                TokenExchangeRequest(
                    grant_type="authorization_code",
                    code=code,
                    code_verifier=pair.verifier,
                    redirect_uri=self._oauth.redirect_uri,
                    client_id=self._oauth.client_id,
                    client_secret=self._oauth.client_secret,
                )
            )
            tokens = TokenSet.from_token_response(
                payload,
                previous=None,
                now=self._clock(),
                safety_margin=self._safety_margin,
            )
        except TokenError as exc:
            raise AuthError(f"Failed to exchange authorization code: {exc}") from exc

        if tokens.refresh_token is None:
            logger.warning("Token response did not include a refresh token")
        logger.info("Google authorization complete")
        return tokens
