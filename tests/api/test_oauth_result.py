"""Tests for the loopback OAuth redirect endpoints and the result store.

Scenarios:
- callback stores the result and renders the HTML page
- result is pending until the redirect arrives, then consumed once
- missing state is rejected on both endpoints
- results expire after the TTL
"""

from __future__ import annotations

import httpx
import pytest

from calsync.api.app import create_app
from calsync.api.routers.oauth import OAuthResultStore

pytestmark = pytest.mark.unit


class _Tick:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def tick() -> _Tick:
    return _Tick()


@pytest.fixture
def results(tick) -> OAuthResultStore:
    return OAuthResultStore(ttl_seconds=300, clock=tick)


@pytest.fixture
def app(results):
    return create_app(http_client=httpx.AsyncClient(), result_store=results)


# ---------------------------------------------------------------------------
# OAuthResultStore
# ---------------------------------------------------------------------------


class TestOAuthResultStore:
    def test_unknown_state_is_pending(self, results):
        assert results.take("nope").status == "pending"

    def test_code_is_consumed_once(self, results):
        results.put("s1", code="c1", error=None)
        first = results.take("s1")
        assert (first.status, first.code) == ("complete", "c1")
        assert results.take("s1").status == "pending"
        assert len(results) == 0

    def test_error_wins_over_code(self, results):
        results.put("s1", code="c1", error="access_denied")
        result = results.take("s1")
        assert (result.status, result.error) == ("error", "access_denied")

    def test_entry_without_code_or_error_stays_pending(self, results):
        results.put("s1", code="", error=None)
        assert results.take("s1").status == "pending"
        assert len(results) == 1

    def test_entries_expire_after_ttl(self, results, tick):
        results.put("old", code="c", error=None)
        tick.now += 301
        results.put("new", code="c", error=None)
        assert len(results) == 1
        assert results.take("old").status == "pending"
        assert results.take("new").status == "complete"

    def test_entry_at_ttl_boundary_survives(self, results, tick):
        results.put("s1", code="c", error=None)
        tick.now += 300
        assert results.take("s1").status == "complete"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


class TestCallbackEndpoint:
    def test_app_uses_injected_empty_store(self, app, results):
        assert len(results) == 0
        assert app.state.oauth_results is results

    async def test_stores_result_and_returns_html(self, app, results):
        async with _client(app) as client:
            resp = await client.get(
                "/oauth/google/callback", params={"state": "abc", "code": "4/code"}
            )

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert "return to the app" in resp.text
        assert len(results) == 1

    async def test_missing_state(self, app, results):
        async with _client(app) as client:
            resp = await client.get("/oauth/google/callback", params={"code": "4/code"})

        assert resp.status_code == 400
        assert resp.text == "Missing state"
        assert len(results) == 0


class TestResultEndpoint:
    async def test_full_round_trip(self, app):
        async with _client(app) as client:
            pending = await client.get("/oauth/google/result", params={"state": "abc"})
            await client.get(
                "/oauth/google/callback", params={"state": "abc", "code": "4/code"}
            )
            complete = await client.get("/oauth/google/result", params={"state": "abc"})
            again = await client.get("/oauth/google/result", params={"state": "abc"})

        assert pending.json() == {"status": "pending"}
        assert complete.json() == {"status": "complete", "code": "4/code"}
        assert again.json() == {"status": "pending"}

    async def test_provider_error(self, app):
        async with _client(app) as client:
            await client.get(
                "/oauth/google/callback", params={"state": "abc", "error": "access_denied"}
            )
            resp = await client.get("/oauth/google/result", params={"state": "abc"})

        assert resp.json() == {"status": "error", "error": "access_denied"}

    async def test_missing_state(self, app):
        async with _client(app) as client:
            resp = await client.get("/oauth/google/result")

        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing state"}

    async def test_results_are_scoped_by_state(self, app):
        async with _client(app) as client:
            await client.get("/oauth/google/callback", params={"state": "a", "code": "ca"})
            other = await client.get("/oauth/google/result", params={"state": "b"})
            mine = await client.get("/oauth/google/result", params={"state": "a"})

        assert other.json()["status"] == "pending"
        assert mine.json()["code"] == "ca"
