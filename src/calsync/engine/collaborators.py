"""Collaborator contracts used by the sync engine, and their default implementations.

The engine depends only on the Protocols below. ``BackendClient`` implements
the three HTTP-backed ones (result channel, token exchanger, events lister)
against the calsync backend; ``WebBrowserOpener`` hands the authorization URL
to the system browser.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from typing import Any, Protocol

import httpx

from calsync.engine.models import (
    AuthResult,
    EventsListRequest,
    EventsPage,
    TokenExchangeRequest,
)
from calsync.errors import AuthError, FetchError, TokenError, provider_error_message

logger = logging.getLogger(__name__)

RESULT_PATH = "/oauth/google/result"
TOKEN_PATH = "/integrations/google/token"
EVENTS_PATH = "/integrations/google/events"


class BrowserOpener(Protocol):
    async def open(self, url: str) -> None: ...


class AuthResultChannel(Protocol):
    async def poll_result(self, state: str) -> AuthResult: ...


class TokenExchanger(Protocol):
    async def exchange_token(self, request: TokenExchangeRequest) -> dict[str, Any]: ...


class EventsLister(Protocol):
    async def list_events(self, request: EventsListRequest) -> EventsPage: ...


class WebBrowserOpener:
    """Open URLs with the stdlib ``webbrowser`` module (in a worker thread)."""

    async def open(self, url: str) -> None:
        opened = await asyncio.to_thread(webbrowser.open, url)
        if not opened:
            logger.warning("No browser available; open this URL to authorize: %s", url)


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class BackendClient:
    """httpx client for the calsync backend endpoints.

    Parameters
    ----------
    base_url:
        Backend origin, e.g. ``http://127.0.0.1:31337``.
    http_client:
        Optional pre-built ``httpx.AsyncClient``. When omitted the client is
        created here and closed by ``aclose()``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> BackendClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def poll_result(self, state: str) -> AuthResult:
        try:
            response = await self._http_client.get(
                f"{self._base_url}{RESULT_PATH}", params={"state": state}
            )
        except httpx.HTTPError as exc:
            # The backend may still be starting; the caller keeps polling.
            logger.debug("OAuth result poll failed: %s", exc)
            return AuthResult(status="pending")

        payload = _json_body(response)
        if response.status_code != 200 or not isinstance(payload, dict):
            raise AuthError(
                "OAuth result channel failed "
                f"({response.status_code}): {provider_error_message(payload)}"
            )
        try:
            return AuthResult.model_validate(payload)
        except ValueError as exc:
            raise AuthError("OAuth result channel returned an unexpected payload") from exc

    async def exchange_token(self, request: TokenExchangeRequest) -> dict[str, Any]:
        try:
            response = await self._http_client.post(
                f"{self._base_url}{TOKEN_PATH}", json=request.to_wire()
            )
        except httpx.HTTPError as exc:
            raise TokenError(f"Token exchange request failed: {exc}") from exc

        payload = _json_body(response)
        if response.status_code < 200 or response.status_code >= 300:
            raise TokenError(
                f"Token exchange failed ({response.status_code}): "
                f"{provider_error_message(payload, fallback='Token exchange failed')}"
            )
        if not isinstance(payload, dict):
            raise TokenError("Token endpoint returned invalid JSON")
        return payload

    async def list_events(self, request: EventsListRequest) -> EventsPage:
        try:
            response = await self._http_client.post(
                f"{self._base_url}{EVENTS_PATH}", json=request.to_wire()
            )
        except httpx.HTTPError as exc:
            raise FetchError(status_code=0, message=f"Events request failed: {exc}") from exc

        payload = _json_body(response)
        return EventsPage(
            status_code=response.status_code,
            body=payload if isinstance(payload, dict) else {},
        )
