"""calsync backend FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler owning the outbound ``httpx.AsyncClient``
- OAuth loopback redirect endpoints (``/oauth/google/*``)
- Google token / events proxy endpoints (``/integrations/google/*``)
- Health endpoint at GET /health
- Error handlers producing ``{"error": "<message>"}`` bodies
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from calsync.api.models import ErrorResponse, HealthResponse
from calsync.api.routers.google import router as google_router
from calsync.api.routers.oauth import OAuthResultStore
from calsync.api.routers.oauth import router as oauth_router
from calsync.config import CalsyncConfig

logger = logging.getLogger(__name__)


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    message = str(errors[0].get("msg") or "Invalid request")
    return message.removeprefix("Value error, ")


async def _handle_request_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return 400 for malformed request bodies or parameters."""
    message = _first_validation_message(exc)
    logger.info("Validation error on %s: %s", request.url.path, message)
    return JSONResponse(status_code=400, content=ErrorResponse(error=message).model_dump())


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return JSONResponse(status_code=400, content=ErrorResponse(error=str(exc)).model_dump())


async def _handle_upstream_error(request: Request, exc: httpx.HTTPError) -> JSONResponse:
    """Return 502 when Google cannot be reached."""
    logger.warning("Upstream request failed on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=502,
        content=ErrorResponse(error="Upstream request to Google failed").model_dump(),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, _handle_request_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(httpx.HTTPError, _handle_upstream_error)  # type: ignore[arg-type]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the outbound HTTP client on startup (unless injected) and close it on shutdown."""
    owns_client = app.state.http_client is None
    if owns_client:
        app.state.http_client = httpx.AsyncClient(timeout=app.state.request_timeout)
    logger.info("calsync backend started")

    yield

    if owns_client:
        await app.state.http_client.aclose()
        app.state.http_client = None
    app.state.oauth_results.clear()


def create_app(
    config: CalsyncConfig | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    result_store: OAuthResultStore | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration; defaults are used when omitted. Only the
        ``[oauth].client_secret`` and ``[backend].request_timeout`` values
        are read.
    http_client:
        Client used for outbound calls to Google. When omitted, one is
        created by the lifespan handler.
    result_store:
        OAuth redirect result store. Defaults to a fresh in-memory store.
    """
    config = config or CalsyncConfig()

    app = FastAPI(
        title="calsync backend",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.http_client = http_client
    app.state.request_timeout = config.backend.request_timeout
    app.state.client_secret = config.oauth.client_secret
    app.state.oauth_results = result_store if result_store is not None else OAuthResultStore()

    register_error_handlers(app)

    app.include_router(oauth_router)
    app.include_router(google_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return HealthResponse().model_dump()

    return app
