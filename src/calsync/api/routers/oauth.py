"""Loopback OAuth redirect endpoints.

  1. GET /oauth/google/callback
     - Google redirects the browser here after consent.
     - Stores ``{code, error, received_at}`` keyed by ``state`` and prunes
       entries older than 5 minutes.
     - Returns a small HTML page telling the user to go back to the app.

  2. GET /oauth/google/result
     - Polled by the sync engine with the ``state`` it generated.
     - ``pending`` while nothing has arrived; ``complete`` / ``error`` results
       are consumed on first read (one-time-use).

The store is process-local. Do not run multiple worker processes.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response

from calsync.api.models import ErrorResponse, StoredOAuthResult
from calsync.engine.models import AuthResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth/google", tags=["oauth"])

OAUTH_RESULT_TTL_SECONDS = 5 * 60

_CALLBACK_PAGE = """\
<html>
  <head><title>Google Calendar Connected</title></head>
  <body style="font-family: sans-serif; padding: 24px;">
    <h2>Connection received</h2>
    <p>You can return to the app. This window can be closed.</p>
  </body>
</html>"""


class OAuthResultStore:
    """Redirect results keyed by ``state`` with a fixed TTL."""

    def __init__(
        self,
        ttl_seconds: float = OAUTH_RESULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._results: dict[str, StoredOAuthResult] = {}

    def __len__(self) -> int:
        return len(self._results)

    def put(self, state: str, *, code: str | None, error: str | None) -> None:
        self.prune()
        self._results[state] = StoredOAuthResult(
            code=code or None,
            error=error or None,
            received_at=self._clock(),
        )

    def take(self, state: str) -> AuthResult:
        """Return the result for *state*, consuming it when it is final."""
        self.prune()
        stored = self._results.get(state)
        if stored is None:
            return AuthResult(status="pending")
        if stored.error:
            del self._results[state]
            return AuthResult(status="error", error=stored.error)
        if stored.code:
            del self._results[state]
            return AuthResult(status="complete", code=stored.code)
        return AuthResult(status="pending")

    def prune(self) -> None:
        now = self._clock()
        expired = [
            state
            for state, stored in self._results.items()
            if now - stored.received_at > self._ttl_seconds
        ]
        for state in expired:
            del self._results[state]

    def clear(self) -> None:
        self._results.clear()


def _result_store(request: Request) -> OAuthResultStore:
    return request.app.state.oauth_results


@router.get("/callback")
async def oauth_google_callback(
    request: Request,
    state: str | None = Query(default=None, description="Anti-CSRF state from the auth URL."),
    code: str | None = Query(default=None, description="Authorization code from Google."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
) -> Response:
    """Capture the provider redirect for the polling engine."""
    if not state:
        return PlainTextResponse("Missing state", status_code=400)

    if error:
        logger.warning("Google OAuth provider error: %s", error)
    logger.info("OAuth redirect received (state=%s...)", state[:8])
    _result_store(request).put(state, code=code, error=error)
    return HTMLResponse(_CALLBACK_PAGE)


@router.get("/result")
async def oauth_google_result(
    request: Request,
    state: str | None = Query(default=None, description="State generated by the engine."),
) -> JSONResponse:
    """Report ``pending`` / ``complete`` / ``error`` for *state*."""
    if not state:
        return JSONResponse(
            status_code=400, content=ErrorResponse(error="Missing state").model_dump()
        )
    result = _result_store(request).take(state)
    return JSONResponse(content=result.to_wire())
