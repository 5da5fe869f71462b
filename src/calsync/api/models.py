"""Pydantic models for the calsync backend responses.

Request bodies of the proxy endpoints reuse the engine's wire models
(``TokenExchangeRequest``, ``EventsListRequest``) so both sides agree on
field names.
"""

from __future__ import annotations

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Error envelope: ``{"error": "<message>"}``."""

    error: str


class HealthResponse(BaseModel):
    status: str = "ok"


class StoredOAuthResult(BaseModel):
    """Redirect parameters captured by the callback, waiting to be polled."""

    code: str | None = None
    error: str | None = None
    received_at: float
