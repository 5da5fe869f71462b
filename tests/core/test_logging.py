"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from calsync.core.logging import (
    _NOISE_LOGGERS,
    CredentialRedactionFilter,
    _calendar_context,
    add_calendar_context,
    configure_logging,
    get_calendar_context,
    set_calendar_context,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and calendar context between tests."""
    token = _calendar_context.set(None)
    yield
    _calendar_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)
    structlog.reset_defaults()


def _record(msg: str, *args) -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg=msg,
        args=args,
        exc_info=None,
    )


# ---------------------------------------------------------------------------
# Calendar context
# ---------------------------------------------------------------------------


class TestCalendarContext:
    def test_set_and_get(self):
        set_calendar_context("primary")
        assert get_calendar_context() == "primary"

    def test_default_is_none(self):
        assert get_calendar_context() is None

    def test_processor_injects_calendar_id(self):
        set_calendar_context("team@group.calendar.google.com")
        result = add_calendar_context(None, "info", {"event": "test"})
        assert result["calendar_id"] == "team@group.calendar.google.com"

    def test_processor_handles_unset_context(self):
        result = add_calendar_context(None, "info", {"event": "test"})
        assert result["calendar_id"] is None


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguring_replaces_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_sets_calendar_context(self):
        configure_logging(calendar_id="primary")
        assert get_calendar_context() == "primary"

    def test_noise_loggers_suppressed(self):
        configure_logging()
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        configure_logging(level="CHATTY")
        assert logging.getLogger().level == logging.INFO

    def test_handlers_carry_redaction_filter(self, tmp_path: Path):
        configure_logging(log_file=tmp_path / "calsync.log")
        for handler in logging.getLogger().handlers:
            assert any(isinstance(f, CredentialRedactionFilter) for f in handler.filters)


class TestLogFile:
    def test_creates_parent_directories(self, tmp_path: Path):
        log_file = tmp_path / "nested" / "dir" / "calsync.log"
        configure_logging(log_file=log_file)
        assert log_file.parent.is_dir()

    def test_file_output_is_json_and_redacted(self, tmp_path: Path):
        log_file = tmp_path / "calsync.log"
        configure_logging(fmt="text", log_file=log_file, calendar_id="primary")

        logging.getLogger("calsync.test").info("refreshing with refresh_token=%s", "1//secret")
        for handler in logging.getLogger().handlers:
            handler.flush()

        data = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert data["event"] == "refreshing with refresh_token=[REDACTED]"
        assert data["calendar_id"] == "primary"
        assert data["level"] == "info"
        assert "1//secret" not in log_file.read_text()


# ---------------------------------------------------------------------------
# CredentialRedactionFilter
# ---------------------------------------------------------------------------


class TestCredentialRedactionFilter:
    def test_bearer_token_is_redacted(self):
        record = _record("Sending request with Authorization: Bearer ya29.a0AfH6SMBx")
        CredentialRedactionFilter().filter(record)
        assert "[REDACTED]" in record.msg
        assert "ya29.a0AfH6SMBx" not in record.msg

    def test_interpolated_secret_is_redacted_and_args_cleared(self):
        record = _record("token exchange body: %s", {"refresh_token": "1//abc"})
        CredentialRedactionFilter().filter(record)
        assert record.args == ()
        assert "1//abc" not in record.getMessage()

    def test_clean_message_unchanged(self):
        record = _record("Status: %s", "ok")
        CredentialRedactionFilter().filter(record)
        assert record.msg == "Status: %s"
        assert record.args == ("ok",)

    def test_filter_always_returns_true(self):
        assert CredentialRedactionFilter().filter(_record("anything")) is True

    def test_malformed_args_pass_through(self):
        record = _record("two values: %s %s", "one")
        assert CredentialRedactionFilter().filter(record) is True
        assert record.msg == "two values: %s %s"
        assert record.args == ("one",)

    def test_malformed_call_does_not_raise_at_call_site(self, monkeypatch):
        monkeypatch.setattr(logging, "raiseExceptions", False)
        configure_logging(fmt="text")
        logging.getLogger("calsync.test").warning("two values: %s %s", "one")
