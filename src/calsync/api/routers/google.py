"""Google API proxy endpoints.

The engine never talks to Google's token endpoint directly, so the OAuth
client secret can stay on the backend. Both endpoints relay Google's JSON
body and status code unchanged.

  POST /integrations/google/token   token exchange / refresh
  POST /integrations/google/events  calendar events list (one page)
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from calsync.api.models import ErrorResponse
from calsync.engine.models import DEFAULT_CALENDAR_ID, EventsListRequest, TokenExchangeRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations/google", tags=["google"])

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"


def _http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def _relay(response: httpx.Response) -> JSONResponse:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    return JSONResponse(status_code=response.status_code, content=payload)


def build_token_form(
    body: TokenExchangeRequest, *, fallback_client_secret: str | None
) -> dict[str, str]:
    """Form fields for Google's token endpoint."""
    form = {"client_id": body.client_id}
    client_secret = body.client_secret or fallback_client_secret
    if client_secret:
        form["client_secret"] = client_secret

    if body.grant_type == "authorization_code":
        form["grant_type"] = "authorization_code"
        form["redirect_uri"] = body.redirect_uri
        form["code"] = body.code or ""
        form["code_verifier"] = body.code_verifier or ""
    else:
        form["grant_type"] = "refresh_token"
        form["refresh_token"] = body.refresh_token or ""
    return form


def build_events_params(body: EventsListRequest) -> dict[str, Any]:
    """Query parameters for ``events.list``: delta when a sync token is given, else range."""
    params: dict[str, Any]
    if body.sync_token:
        params = {"syncToken": body.sync_token, "showDeleted": "true"}
    else:
        params = {
            "timeMin": body.time_min or "",
            "timeMax": body.time_max or "",
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "true",
        }
    if body.page_token:
        params["pageToken"] = body.page_token
    if body.max_results:
        params["maxResults"] = str(body.max_results)
    return params


def events_url(calendar_id: str | None, *, base_url: str = GOOGLE_CALENDAR_API_BASE_URL) -> str:
    encoded = quote(calendar_id or DEFAULT_CALENDAR_ID, safe="")
    return f"{base_url}/calendars/{encoded}/events"


@router.post("/token")
async def google_token(request: Request, body: TokenExchangeRequest) -> JSONResponse:
    """Exchange an authorization code or refresh an access token."""
    form = build_token_form(body, fallback_client_secret=request.app.state.client_secret)
    logger.info("Proxying Google token request (grant_type=%s)", body.grant_type)

    response = await _http_client(request).post(
        GOOGLE_TOKEN_URL,
        data=form,
        headers={"Accept": "application/json"},
    )
    if response.status_code >= 400:
        logger.warning("Google token endpoint returned HTTP %d", response.status_code)
    return _relay(response)


@router.post("/events")
async def google_events(request: Request, body: EventsListRequest) -> JSONResponse:
    """List one page of calendar events on behalf of the engine."""
    if not body.sync_token and (not body.time_min or not body.time_max):
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error="timeMin and timeMax are required without syncToken"
            ).model_dump(),
        )

    response = await _http_client(request).get(
        events_url(body.calendar_id),
        params=build_events_params(body),
        headers={"Authorization": f"Bearer {body.access_token}"},
    )
    if response.status_code >= 400:
        logger.warning(
            "Google events list returned HTTP %d for calendar %s",
            response.status_code,
            body.calendar_id,
        )
    return _relay(response)
