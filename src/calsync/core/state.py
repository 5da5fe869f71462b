"""Key-value state store used to persist the sync engine's record.

Only a ``get(key)`` / ``set(key, value)`` contract is required by the engine.
Two implementations are provided:

- ``JsonFileStateStore``: a single JSON document on disk, written atomically.
- ``MemoryStateStore``: a process-local dict (tests, ephemeral runs).

Values must be JSON-serialisable. Setting ``None`` removes the key.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from calsync.errors import PersistenceError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Async key-value persistence contract."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...


class MemoryStateStore:
    """In-memory store. Values are deep-copied through JSON on the way in."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any | None:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        if value is None:
            self._data.pop(key, None)
            return
        try:
            self._data[key] = json.loads(json.dumps(value))
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Value for {key!r} is not JSON-serialisable: {exc}") from exc

    def snapshot(self) -> dict[str, Any]:
        return dict(self._data)


class JsonFileStateStore:
    """Store every key in one JSON object on disk.

    Reads and writes run in a worker thread so the event loop never blocks on
    disk I/O. Writes go to a temp file in the same directory and are moved
    into place with ``os.replace``.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            await asyncio.to_thread(self._write_all, data)

    def _read_all(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Failed to read state file {self._path}: {exc}") from exc
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PersistenceError(
                f"State file {self._path} is not valid JSON: {exc.msg}"
            ) from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"State file {self._path} must contain a JSON object")
        return data

    def _write_all(self, data: dict[str, Any]) -> None:
        try:
            payload = json.dumps(data, indent=2, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"State is not JSON-serialisable: {exc}") from exc

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=self._path.parent, text=True
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"Failed to write state file {self._path}: {exc}") from exc
        logger.debug("State written to %s (%d key(s))", self._path, len(data))
