"""
Device-scoped key/value settings.

Holds the small pieces of state that belong to the device rather than to a
user record: the signed-in identity pointer, the guest flag and message
counter, and the cloud override.  Values are JSON encoded in a single sqlite3
table next to the local record store.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Union

from .models import CloudConfig

logger = logging.getLogger("tigra")

__all__ = ["SETTINGS_FILENAME", "DeviceSettings"]

SETTINGS_FILENAME = "settings.sqlite3"

_CURRENT_USER = "current_user"
_GUEST_MODE = "guest_mode"
_GUEST_COUNT = "guest_count"
_CLOUD_CONFIG = "cloud_config"
_CLOUD_DISCONNECTED = "cloud_disconnected"


class DeviceSettings:
    """
    Thread-safe persistent settings store.

    Parameters
    ----------
    path:
        Path to the sqlite3 file.  Parent directories are created
        automatically.  ``":memory:"`` keeps everything in process.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = path if path == ":memory:" else Path(path)
        self._lock = threading.Lock()

        if isinstance(self._path, Path):
            self._path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
                key    TEXT PRIMARY KEY,
                value  TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    @property
    def path(self) -> Union[str, Path]:
        return self._path

    # -- raw access ----------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("[Tigra Settings] Discarding unreadable value for %r", key)
            return default

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, json.dumps(value)),
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            self._conn.commit()

    def clear(self) -> None:
        """Remove every setting."""
        with self._lock:
            self._conn.execute("DELETE FROM settings")
            self._conn.commit()

    def items(self) -> dict[str, Any]:
        with self._lock:
            rows = self._conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        return {key: json.loads(value) for key, value in rows}

    def close(self) -> None:
        """Close the underlying sqlite3 connection."""
        self._conn.close()

    # -- typed accessors -----------------------------------------------------

    @property
    def current_user(self) -> str | None:
        value = self.get(_CURRENT_USER)
        return str(value) if value else None

    def set_current_user(self, email: str) -> None:
        self.set(_CURRENT_USER, email)

    def clear_current_user(self) -> None:
        self.delete(_CURRENT_USER)

    @property
    def guest_mode(self) -> bool:
        return bool(self.get(_GUEST_MODE, False))

    @guest_mode.setter
    def guest_mode(self, enabled: bool) -> None:
        if enabled:
            self.set(_GUEST_MODE, True)
        else:
            self.delete(_GUEST_MODE)

    @property
    def guest_count(self) -> int:
        try:
            return int(self.get(_GUEST_COUNT, 0))
        except (TypeError, ValueError):
            return 0

    @guest_count.setter
    def guest_count(self, count: int) -> None:
        self.set(_GUEST_COUNT, int(count))

    @property
    def cloud_config(self) -> CloudConfig | None:
        raw = self.get(_CLOUD_CONFIG)
        if not isinstance(raw, dict):
            return None
        config = CloudConfig.from_dict(raw)
        if not config.is_complete():
            logger.error("[Tigra Settings] Invalid cloud config, ignoring override")
            return None
        return config

    @property
    def cloud_disconnected(self) -> bool:
        return bool(self.get(_CLOUD_DISCONNECTED, False))

    def set_cloud_config(self, config: CloudConfig) -> None:
        """Record a cloud override; clears any disconnect marker."""
        self.set(_CLOUD_CONFIG, config.to_dict())
        self.delete(_CLOUD_DISCONNECTED)

    def mark_cloud_disconnected(self) -> None:
        """Drop the override and pin the device to local-only storage."""
        self.delete(_CLOUD_CONFIG)
        self.set(_CLOUD_DISCONNECTED, True)

    def __repr__(self) -> str:
        return f"DeviceSettings(path={self._path!r})"
