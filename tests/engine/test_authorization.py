"""Tests for the PKCE authorization flow."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest

from calsync.config import OAuthConfig
from calsync.engine.authorization import (
    GOOGLE_AUTH_URL,
    AuthorizationFlow,
    build_authorization_url,
    sanitize_provider_error,
)
from calsync.engine.models import AuthResult
from calsync.engine.pkce import generate_challenge
from calsync.errors import AuthError, TokenError
from tests.conftest import NOW, ScriptedChannel

pytestmark = pytest.mark.unit


class _FakeMonotonic:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value

    async def sleep(self, seconds: float) -> None:
        self.value += seconds


def _oauth(**overrides) -> OAuthConfig:
    values = {"client_id": "cid", "auth_poll_interval": 1.0, "auth_timeout": 5.0}
    values.update(overrides)
    return OAuthConfig(**values)


def _flow(oauth, channel, exchanger, opener=None, monotonic=None) -> AuthorizationFlow:
    monotonic = monotonic or _FakeMonotonic()
    return AuthorizationFlow(
        oauth,
        opener=opener or AsyncMock(),
        channel=channel,
        exchanger=exchanger,
        clock=lambda: NOW,
        sleep=monotonic.sleep,
        monotonic=monotonic,
    )


class TestBuildAuthorizationUrl:
    def test_contains_pkce_and_offline_params(self):
        url = build_authorization_url(_oauth(), state="st4te", challenge="ch4llenge")
        parts = urlsplit(url)
        params = {k: v[0] for k, v in parse_qs(parts.query).items()}

        assert url.startswith(GOOGLE_AUTH_URL + "?")
        assert params == {
            "client_id": "cid",
            "redirect_uri": "http://127.0.0.1:31337/oauth/google/callback",
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "scope": "https://www.googleapis.com/auth/calendar.readonly",
            "state": "st4te",
            "code_challenge": "ch4llenge",
            "code_challenge_method": "S256",
        }

    def test_scopes_are_space_joined(self):
        url = build_authorization_url(
            _oauth(scopes=("scope-a", "scope-b")), state="s", challenge="c"
        )
        assert parse_qs(urlsplit(url).query)["scope"] == ["scope-a scope-b"]


class TestSanitizeProviderError:
    def test_known_code(self):
        assert "denied" in sanitize_provider_error("access_denied")

    def test_unknown_code_is_generic(self):
        assert sanitize_provider_error("weird<script>") == (
            "The authorization failed. Please try again."
        )


class TestAuthorizationFlow:
    async def test_success_exchanges_code_with_verifier(self, exchanger):
        channel = ScriptedChannel(
            AuthResult(status="pending"),
            AuthResult(status="pending"),
            AuthResult(status="complete", code="the-code"),
        )
        opener = AsyncMock()

        tokens = await _flow(_oauth(), channel, exchanger, opener).run()

        assert tokens.access_token == "access-1"
        assert tokens.refresh_token == "refresh-1"
        assert len(channel.polled_states) == 3

        url = opener.open.await_args.args[0]
        params = parse_qs(urlsplit(url).query)
        assert params["state"] == [channel.polled_states[0]]

        request = exchanger.exchange_token.await_args.args[0]
        assert request.grant_type == "authorization_code"
        assert request.code == "the-code"
        assert generate_challenge(request.code_verifier) == params["code_challenge"][0]

    async def test_each_attempt_uses_fresh_state(self, exchanger):
        channel = ScriptedChannel(
            AuthResult(status="complete", code="one"), AuthResult(status="complete", code="two")
        )
        flow = _flow(_oauth(), channel, exchanger)
        await flow.run()
        await flow.run()
        assert channel.polled_states[0] != channel.polled_states[1]

    async def test_missing_client_id(self, exchanger):
        opener = AsyncMock()
        with pytest.raises(AuthError, match="client not configured"):
            await _flow(_oauth(client_id=""), ScriptedChannel(), exchanger, opener).run()
        opener.open.assert_not_awaited()

    async def test_provider_error(self, exchanger):
        channel = ScriptedChannel(AuthResult(status="error", error="access_denied"))
        with pytest.raises(AuthError, match="denied access"):
            await _flow(_oauth(), channel, exchanger).run()
        exchanger.exchange_token.assert_not_awaited()

    async def test_times_out(self, exchanger):
        monotonic = _FakeMonotonic()
        channel = ScriptedChannel()
        with pytest.raises(AuthError, match="timed out"):
            await _flow(_oauth(), channel, exchanger, monotonic=monotonic).run()
        # Polls at t=0..5 with a 1s interval.
        assert len(channel.polled_states) == 6
        assert monotonic.value == 5.0

    async def test_complete_without_code(self, exchanger):
        channel = ScriptedChannel(AuthResult(status="complete"))
        with pytest.raises(AuthError, match="missing the code"):
            await _flow(_oauth(), channel, exchanger).run()

    async def test_exchange_failure_becomes_auth_error(self, exchanger):
        exchanger.exchange_token.side_effect = TokenError("Token exchange failed (400): bad code")
        channel = ScriptedChannel(AuthResult(status="complete", code="c"))
        with pytest.raises(AuthError, match="Failed to exchange authorization code"):
            await _flow(_oauth(), channel, exchanger).run()

    async def test_random_source_failure(self, exchanger):
        with patch(
            "calsync.engine.authorization.new_pkce_pair",
            side_effect=NotImplementedError("no entropy"),
        ):
            with pytest.raises(AuthError, match="random source unavailable"):
                await _flow(_oauth(), ScriptedChannel(), exchanger).run()
