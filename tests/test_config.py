"""Tests for calsync configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from calsync.config import (
    DEFAULT_REDIRECT_URI,
    DEFAULT_SCOPES,
    CalsyncConfig,
    ConfigError,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[oauth]
client_id = "${CALSYNC_TEST_CLIENT_ID}"
client_secret = "shh"
scopes = ["https://www.googleapis.com/auth/calendar.readonly", "openid"]
auth_timeout = 60

[sync]
calendar_id = "team@group.calendar.google.com"
reference_timezone = "Asia/Seoul"
past_days = 7
future_days = 14
poll_interval = 120
page_size = 500

[backend]
base_url = "http://127.0.0.1:40000/"
port = 40000

[storage]
path = "~/calsync-test/state.json"

[logging]
level = "debug"
format = "JSON"
"""


def _write_toml(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "calsync.toml"
    path.write_text(content)
    return path


@pytest.fixture(autouse=True)
def _no_google_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("GOOGLE_CLIENT_ID", raising=False)
    monkeypatch.delenv("GOOGLE_CLIENT_SECRET", raising=False)


# ---------------------------------------------------------------------------
# Happy-path tests
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_full_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CALSYNC_TEST_CLIENT_ID", "abc.apps.googleusercontent.com")
        config = load_config(_write_toml(tmp_path, FULL_TOML))

        assert config.oauth.client_id == "abc.apps.googleusercontent.com"
        assert config.oauth.client_secret == "shh"
        assert config.oauth.scopes == (
            "https://www.googleapis.com/auth/calendar.readonly",
            "openid",
        )
        assert config.oauth.auth_timeout == 60.0
        assert config.sync.calendar_id == "team@group.calendar.google.com"
        assert str(config.sync.tzinfo) == "Asia/Seoul"
        assert (config.sync.past_days, config.sync.future_days) == (7, 14)
        assert config.sync.page_size == 500
        assert config.backend.base_url == "http://127.0.0.1:40000"
        assert config.backend.port == 40000
        assert config.storage.path == "~/calsync-test/state.json"
        assert (config.logging.level, config.logging.format) == ("DEBUG", "json")

    def test_defaults_for_empty_file(self, tmp_path: Path):
        config = load_config(_write_toml(tmp_path, ""))
        assert config == CalsyncConfig()
        assert config.oauth.redirect_uri == DEFAULT_REDIRECT_URI
        assert config.oauth.scopes == DEFAULT_SCOPES
        assert config.sync.reference_timezone == "UTC"
        assert config.sync.poll_interval == 300

    def test_no_file_uses_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir(tmp_path)
        assert load_config() == CalsyncConfig()

    def test_google_env_fallback(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("GOOGLE_CLIENT_ID", " env-client ")
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "env-secret")
        config = parse_config({})
        assert config.oauth.client_id == "env-client"
        assert config.oauth.client_secret == "env-secret"

    def test_file_value_wins_over_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("GOOGLE_CLIENT_ID", "env-client")
        assert parse_config({"oauth": {"client_id": "file-client"}}).oauth.client_id == (
            "file-client"
        )

    def test_scopes_may_be_space_separated(self):
        config = parse_config({"oauth": {"scopes": "a b"}})
        assert config.oauth.scopes == ("a", "b")


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CALSYNC_A", "1")
        assert resolve_env_vars({"x": ["${CALSYNC_A}-y", 5], "z": True}) == {
            "x": ["1-y", 5],
            "z": True,
        }

    def test_missing_vars_reported_together(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("CALSYNC_MISSING_1", raising=False)
        monkeypatch.delenv("CALSYNC_MISSING_2", raising=False)
        with pytest.raises(ConfigError, match="CALSYNC_MISSING_1, CALSYNC_MISSING_2"):
            resolve_env_vars("${CALSYNC_MISSING_1}:${CALSYNC_MISSING_2}")


# ---------------------------------------------------------------------------
# Error cases
# ---------------------------------------------------------------------------


class TestConfigErrors:
    def test_explicit_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write_toml(tmp_path, "[sync\n"))

    @pytest.mark.parametrize(
        ("data", "message"),
        [
            ({"sync": {"reference_timezone": "Mars/Base"}}, "valid IANA timezone"),
            ({"sync": {"poll_interval": 0}}, "must be positive"),
            ({"sync": {"past_days": -1}}, "must not be negative"),
            ({"sync": {"page_size": 5000}}, "between 1 and 2500"),
            ({"sync": {"token_safety_margin": -5}}, "non-negative"),
            ({"oauth": {"scopes": []}}, "at least one scope"),
            ({"oauth": {"auth_timeout": "soon"}}, "must be a number"),
            ({"backend": {"port": 70000}}, "valid TCP port"),
            ({"logging": {"format": "xml"}}, "'text' or 'json'"),
            ({"sync": "primary"}, "must be a TOML table"),
        ],
    )
    def test_invalid_values(self, data, message):
        with pytest.raises(ConfigError, match=message):
            parse_config(data)
