"""
Shared fixtures and fakes for the Tigra test suite.

Storage tests run against real sqlite3 files under ``tmp_path``; the cloud
adapter is exercised through ``httpx.MockTransport`` so no network is used.
The completion provider is always a fake: the Apple SDK needs macOS 26+ on
Apple Silicon.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Sequence

import httpx
import pytest

from tigra.config import AppConfig
from tigra.local_backend import DB_FILENAME, LocalBackend
from tigra.models import ChatSession, Message, UserProfile
from tigra.quota import QuotaGate
from tigra.settings import DeviceSettings
from tigra.storage import StorageFacade

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeProvider:
    """Scripted completion provider.

    Yields *deltas* in order, then raises *error* if given.  Every call is
    recorded so tests can inspect the history and system instruction.
    """

    def __init__(self, deltas: Sequence[str] = ("Hi", " there"), error: Exception | None = None):
        self.deltas = list(deltas)
        self.error = error
        self.calls: list[tuple[tuple[Message, ...], str, str]] = []
        self.closed = False
        self.gate: asyncio.Event | None = None

    async def stream(
        self, history: Sequence[Message], system_instruction: str, user_turn: str
    ) -> AsyncIterator[str]:
        self.calls.append((tuple(history), system_instruction, user_turn))
        try:
            for index, delta in enumerate(self.deltas):
                if self.gate is not None and index == 1:
                    await self.gate.wait()
                yield delta
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class CloudTables:
    """In-memory PostgREST double for ``httpx.MockTransport``.

    ``failures`` maps ``(method, table)`` to a ``(status, payload)`` error
    response returned instead of touching the tables.
    """

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict]] = {"users": {}, "chats": {}, "prefs": {}}
        self.failures: dict[tuple[str, str], tuple[int, dict]] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        table = request.url.path.rsplit("/", 1)[-1]
        failure = self.failures.get((request.method, table))
        if failure is not None:
            status, payload = failure
            return httpx.Response(status, json=payload)

        rows = self.tables[table]
        if request.method == "GET":
            email_filter = request.url.params.get("email")
            if email_filter is None:
                return httpx.Response(200, json=list(rows.values()))
            email = email_filter.removeprefix("eq.")
            return httpx.Response(200, json=[rows[email]] if email in rows else [])

        body = json.loads(request.content)
        items = body if isinstance(body, list) else [body]
        upsert = "merge-duplicates" in request.headers.get("Prefer", "")
        for item in items:
            if item["email"] in rows and not upsert:
                return httpx.Response(
                    409, json={"code": "23505", "message": "duplicate key value"}
                )
            rows[item["email"]] = item
        return httpx.Response(201)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_profile(email: str = "ada@example.com", **overrides) -> UserProfile:
    fields = {
        "email": email,
        "name": "Ada",
        "id": "1700000000000",
        "age": "36",
        "gender": "female",
        "country": "UK",
        "joined_at": 1_700_000_000_000,
    }
    fields.update(overrides)
    return UserProfile(**fields)


def make_session(session_id: str = "1", *texts: str, title: str = "Chat") -> ChatSession:
    messages = tuple(
        Message(id=f"{session_id}-{i}", role="user" if i % 2 == 0 else "model", content=text, timestamp=i)
        for i, text in enumerate(texts)
    )
    return ChatSession(id=session_id, title=title, messages=messages, created_at=1)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(data_dir=tmp_path)


@pytest.fixture
def settings(tmp_path) -> DeviceSettings:
    store = DeviceSettings(tmp_path / "settings.sqlite3")
    yield store
    store.close()


@pytest.fixture
def local_backend(tmp_path) -> LocalBackend:
    return LocalBackend(tmp_path / DB_FILENAME)


@pytest.fixture
def facade(settings, config) -> StorageFacade:
    return StorageFacade(settings, config)


@pytest.fixture
def quota(settings) -> QuotaGate:
    return QuotaGate(settings)


@pytest.fixture
def cloud_tables() -> CloudTables:
    return CloudTables()
