"""
On-device sqlite3 record store.

Three keyed collections, one row per user email:

* ``users``  - full profile plus password hash
* ``chats``  - ``{email, sessions[]}``
* ``prefs``  - ``{email, preferences}``

Rows hold JSON documents so the local and cloud backends share one record
shape.  Blocking sqlite calls are pushed to a worker thread with
:func:`asyncio.to_thread`; a lock serialises access to the shared connection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Union

from .exceptions import Conflict, StorageError
from .models import ChatSession, UserPreferences, UserProfile
from .protocols import StoredUser

logger = logging.getLogger("tigra")

__all__ = ["DB_FILENAME", "LocalBackend", "profile_from_local_row"]

DB_FILENAME = "tigra.sqlite3"

_TABLES = ("users", "chats", "prefs")


def profile_from_local_row(record: dict[str, Any]) -> StoredUser:
    """Map a local ``users`` document to a canonical profile, stripping the password."""
    data = dict(record)
    password = str(data.pop("password", "") or "")
    return StoredUser(profile=UserProfile.from_dict(data), password=password)


class LocalBackend:
    """
    sqlite3 implementation of :class:`~tigra.protocols.StorageBackend`.

    Parameters
    ----------
    db_path:
        Path to the sqlite3 database file, or ``":memory:"``.
    """

    source = "SQLite (Local)"

    def __init__(self, db_path: Union[str, Path]) -> None:
        self._db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._lock = threading.Lock()

        if isinstance(self._db_path, Path):
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        try:
            self._tune_pragmas()
            self._init_schema()
        except sqlite3.Error:
            self._conn.close()
            raise

    @property
    def db_path(self) -> Union[str, Path]:
        return self._db_path

    def _tune_pragmas(self) -> None:
        """Tune sqlite for local low-latency usage."""
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                email   TEXT PRIMARY KEY,
                record  TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chats (
                email     TEXT PRIMARY KEY,
                sessions  TEXT NOT NULL DEFAULT '[]'
            );

            CREATE TABLE IF NOT EXISTS prefs (
                email  TEXT PRIMARY KEY,
                data   TEXT NOT NULL DEFAULT '{}'
            );
            """
        )
        self._conn.commit()

    # -- blocking helpers ----------------------------------------------------

    def _fetch_value(self, sql: str, params: tuple[Any, ...]) -> Any | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt local record: {exc}") from exc

    def _write(self, sql: str, params: tuple[Any, ...]) -> None:
        with self._lock:
            self._conn.execute(sql, params)
            self._conn.commit()

    def _create_account_sync(self, profile: UserProfile, password: str) -> None:
        record = profile.to_dict()
        record.pop("isLoggedIn", None)
        record["password"] = password
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO users (email, record) VALUES (?, ?)",
                        (profile.email, json.dumps(record, ensure_ascii=False)),
                    )
                    self._conn.execute(
                        "INSERT OR REPLACE INTO chats (email, sessions) VALUES (?, '[]')",
                        (profile.email,),
                    )
                    self._conn.execute(
                        "INSERT OR REPLACE INTO prefs (email, data) VALUES (?, '{}')",
                        (profile.email,),
                    )
            except sqlite3.IntegrityError as exc:
                raise Conflict(f"User {profile.email!r} already exists") from exc

    def _dump_sync(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = {}
        with self._lock:
            for table in _TABLES:
                rows = self._conn.execute(f"SELECT * FROM {table} ORDER BY email").fetchall()
                decoded = []
                for row in rows:
                    item = dict(row)
                    for column in ("record", "sessions", "data"):
                        if column in item:
                            item[column] = json.loads(item[column])
                    if "record" in item:
                        item = {**item.pop("record"), "email": item["email"]}
                        item.pop("password", None)
                    decoded.append(item)
                snapshot[table] = decoded
        return snapshot

    # -- StorageBackend ------------------------------------------------------

    async def user_exists(self, email: str) -> bool:
        record = await asyncio.to_thread(
            self._fetch_value, "SELECT record FROM users WHERE email = ?", (email,)
        )
        return record is not None

    async def get_user(self, email: str) -> StoredUser | None:
        record = await asyncio.to_thread(
            self._fetch_value, "SELECT record FROM users WHERE email = ?", (email,)
        )
        if record is None:
            return None
        return profile_from_local_row(record)

    async def create_account(self, profile: UserProfile, password: str) -> None:
        await asyncio.to_thread(self._create_account_sync, profile, password)

    async def get_sessions(self, email: str) -> list[ChatSession]:
        raw = await asyncio.to_thread(
            self._fetch_value, "SELECT sessions FROM chats WHERE email = ?", (email,)
        )
        return [ChatSession.from_dict(item) for item in raw or []]

    async def put_sessions(self, email: str, sessions: Sequence[ChatSession]) -> None:
        payload = json.dumps([session.to_dict() for session in sessions], ensure_ascii=False)
        await asyncio.to_thread(
            self._write,
            "INSERT OR REPLACE INTO chats (email, sessions) VALUES (?, ?)",
            (email, payload),
        )

    async def get_preferences(self, email: str) -> UserPreferences:
        raw = await asyncio.to_thread(
            self._fetch_value, "SELECT data FROM prefs WHERE email = ?", (email,)
        )
        return UserPreferences.from_dict(raw)

    async def put_preferences(self, email: str, preferences: UserPreferences) -> None:
        payload = json.dumps(preferences.to_dict(), ensure_ascii=False)
        await asyncio.to_thread(
            self._write,
            "INSERT OR REPLACE INTO prefs (email, data) VALUES (?, ?)",
            (email, payload),
        )

    async def dump(self) -> dict[str, Any]:
        return await asyncio.to_thread(self._dump_sync)

    async def close(self) -> None:
        with self._lock:
            self._conn.close()

    def destroy(self) -> None:
        """Close the connection and delete the database files from disk."""
        with self._lock:
            self._conn.close()
        if isinstance(self._db_path, Path):
            for suffix in ("", "-wal", "-shm"):
                Path(f"{self._db_path}{suffix}").unlink(missing_ok=True)

    def __repr__(self) -> str:
        return f"LocalBackend(db_path={self._db_path!r})"
