"""calsync configuration loading and validation.

Reads ``calsync.toml``, resolves ``${VAR}`` environment references, applies
defaults, and returns a validated ``CalsyncConfig`` dataclass.

Example::

    [oauth]
    client_id = "${GOOGLE_CLIENT_ID}"
    scopes = ["https://www.googleapis.com/auth/calendar.readonly"]

    [sync]
    calendar_id = "primary"
    reference_timezone = "Asia/Seoul"
    poll_interval = 300

    [backend]
    base_url = "http://127.0.0.1:31337"

    [storage]
    path = "~/.calsync/state.json"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CONFIG_FILENAME = "calsync.toml"
DEFAULT_REDIRECT_URI = "http://127.0.0.1:31337/oauth/google/callback"
DEFAULT_BACKEND_URL = "http://127.0.0.1:31337"
DEFAULT_SCOPES: tuple[str, ...] = ("https://www.googleapis.com/auth/calendar.readonly",)
DEFAULT_CALENDAR_ID = "primary"
DEFAULT_SYNC_PAST_DAYS = 30
DEFAULT_SYNC_FUTURE_DAYS = 30
DEFAULT_POLL_INTERVAL_SECONDS = 5 * 60
DEFAULT_AUTH_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_AUTH_TIMEOUT_SECONDS = 2 * 60
DEFAULT_PAGE_SIZE = 250
DEFAULT_TOKEN_SAFETY_MARGIN_SECONDS = 60
DEFAULT_STATE_PATH = "~/.calsync/state.json"


class ConfigError(Exception):
    """Raised when calsync configuration is missing, malformed, or invalid."""


@dataclass
class OAuthConfig:
    """OAuth client settings from the [oauth] section."""

    client_id: str = ""
    client_secret: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    auth_poll_interval: float = DEFAULT_AUTH_POLL_INTERVAL_SECONDS
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT_SECONDS


@dataclass
class SyncConfig:
    """Sync engine settings from the [sync] section."""

    calendar_id: str = DEFAULT_CALENDAR_ID
    past_days: int = DEFAULT_SYNC_PAST_DAYS
    future_days: int = DEFAULT_SYNC_FUTURE_DAYS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    page_size: int = DEFAULT_PAGE_SIZE
    reference_timezone: str = "UTC"
    token_safety_margin: float = DEFAULT_TOKEN_SAFETY_MARGIN_SECONDS

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.reference_timezone)


@dataclass
class BackendConfig:
    """Loopback backend settings from the [backend] section."""

    base_url: str = DEFAULT_BACKEND_URL
    host: str = "127.0.0.1"
    port: int = 31337
    request_timeout: float = 30.0


@dataclass
class StorageConfig:
    path: str = DEFAULT_STATE_PATH


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class CalsyncConfig:
    """Parsed and validated calsync configuration."""

    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_number(section: dict[str, Any], path: str, key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{path}.{key} must be a number")
    if value <= 0:
        raise ConfigError(f"{path}.{key} must be positive, got {value}")
    return float(value)


def _non_negative_int(section: dict[str, Any], path: str, key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{path}.{key} must be an integer")
    if value < 0:
        raise ConfigError(f"{path}.{key} must not be negative, got {value}")
    return value


def _optional_string(section: dict[str, Any], path: str, key: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    return value.strip() or None


def _parse_oauth(section: dict[str, Any]) -> OAuthConfig:
    client_id = _optional_string(section, "oauth", "client_id") or os.environ.get(
        "GOOGLE_CLIENT_ID", ""
    ).strip()
    client_secret = _optional_string(section, "oauth", "client_secret") or (
        os.environ.get("GOOGLE_CLIENT_SECRET", "").strip() or None
    )

    scopes_raw = section.get("scopes", list(DEFAULT_SCOPES))
    if isinstance(scopes_raw, str):
        scopes_raw = scopes_raw.split()
    if not isinstance(scopes_raw, list) or not all(isinstance(s, str) for s in scopes_raw):
        raise ConfigError("oauth.scopes must be a list of strings")
    scopes = tuple(s.strip() for s in scopes_raw if s.strip())
    if not scopes:
        raise ConfigError("oauth.scopes must contain at least one scope")

    return OAuthConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=_optional_string(section, "oauth", "redirect_uri") or DEFAULT_REDIRECT_URI,
        scopes=scopes,
        auth_poll_interval=_positive_number(
            section, "oauth", "auth_poll_interval", DEFAULT_AUTH_POLL_INTERVAL_SECONDS
        ),
        auth_timeout=_positive_number(
            section, "oauth", "auth_timeout", DEFAULT_AUTH_TIMEOUT_SECONDS
        ),
    )


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    reference_timezone = _optional_string(section, "sync", "reference_timezone") or "UTC"
    try:
        ZoneInfo(reference_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(
            f"sync.reference_timezone must be a valid IANA timezone: {reference_timezone}"
        ) from exc

    page_size = _non_negative_int(section, "sync", "page_size", DEFAULT_PAGE_SIZE)
    if not 1 <= page_size <= 2500:
        raise ConfigError(f"sync.page_size must be between 1 and 2500, got {page_size}")

    margin = section.get("token_safety_margin", DEFAULT_TOKEN_SAFETY_MARGIN_SECONDS)
    if isinstance(margin, bool) or not isinstance(margin, int | float) or margin < 0:
        raise ConfigError("sync.token_safety_margin must be a non-negative number")

    return SyncConfig(
        calendar_id=_optional_string(section, "sync", "calendar_id") or DEFAULT_CALENDAR_ID,
        past_days=_non_negative_int(section, "sync", "past_days", DEFAULT_SYNC_PAST_DAYS),
        future_days=_non_negative_int(section, "sync", "future_days", DEFAULT_SYNC_FUTURE_DAYS),
        poll_interval=_positive_number(
            section, "sync", "poll_interval", DEFAULT_POLL_INTERVAL_SECONDS
        ),
        page_size=page_size,
        reference_timezone=reference_timezone,
        token_safety_margin=float(margin),
    )


def _parse_backend(section: dict[str, Any]) -> BackendConfig:
    port = section.get("port", 31337)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"backend.port must be a valid TCP port, got {port!r}")
    base_url = _optional_string(section, "backend", "base_url") or DEFAULT_BACKEND_URL
    return BackendConfig(
        base_url=base_url.rstrip("/"),
        host=_optional_string(section, "backend", "host") or "127.0.0.1",
        port=port,
        request_timeout=_positive_number(section, "backend", "request_timeout", 30.0),
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = (_optional_string(section, "logging", "level") or "INFO").upper()
    fmt = (_optional_string(section, "logging", "format") or "text").lower()
    if fmt not in {"text", "json"}:
        raise ConfigError(f"logging.format must be 'text' or 'json', got {fmt!r}")
    return LoggingConfig(
        level=level,
        format=fmt,
        log_file=_optional_string(section, "logging", "log_file"),
    )


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-decoded TOML mapping into a ``CalsyncConfig``."""
    data = resolve_env_vars(data)
    storage = _section(data, "storage")
    return CalsyncConfig(
        oauth=_parse_oauth(_section(data, "oauth")),
        sync=_parse_sync(_section(data, "sync")),
        backend=_parse_backend(_section(data, "backend")),
        storage=StorageConfig(
            path=_optional_string(storage, "storage", "path") or DEFAULT_STATE_PATH
        ),
        logging=_parse_logging(_section(data, "logging")),
    )


def load_config(path: Path | None = None) -> CalsyncConfig:
    """Load and validate a ``calsync.toml``.

    Parameters
    ----------
    path:
        Path to the TOML file. When ``None``, ``./calsync.toml`` is used if it
        exists; otherwise defaults (plus ``GOOGLE_CLIENT_ID`` /
        ``GOOGLE_CLIENT_SECRET`` from the environment) are returned.

    Raises
    ------
    ConfigError
        If an explicit file is missing, contains invalid TOML, or holds
        invalid values.
    """
    if path is None:
        candidate = Path(DEFAULT_CONFIG_FILENAME)
        if not candidate.exists():
            return parse_config({})
        path = candidate

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
