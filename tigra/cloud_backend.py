"""
Cloud record store backed by a PostgREST table API (Supabase REST).

Expected remote schema::

    users(email PK, name, password, age, gender, country, phone, "joinedAt")
    chats(email PK, sessions JSON)
    prefs(email PK, data JSON)

Rows carry no surrogate id; :func:`profile_from_cloud_row` synthesizes one so
callers always receive a complete :class:`~tigra.models.UserProfile`.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from typing import Any

import httpx

from .exceptions import Conflict, NetworkFailure, SchemaMismatch, StorageError
from .models import ChatSession, UserPreferences, UserProfile
from .protocols import StoredUser

logger = logging.getLogger("tigra")

__all__ = ["CLOUD_ID_PREFIX", "CloudBackend", "profile_from_cloud_row", "to_cloud_user_row"]

CLOUD_ID_PREFIX = "cloud_"

# Columns of the remote ``users`` table; anything else is dropped before a write.
USER_COLUMNS = ("email", "name", "password", "age", "gender", "country", "phone", "joinedAt")

_MISSING_TABLE_CODES = {"42P01", "PGRST205"}
_MISSING_COLUMN_CODES = {"42703", "PGRST204"}
_UNIQUE_VIOLATION_CODES = {"23505"}
_COLUMN_PATTERNS = (
    re.compile(r"'(?P<name>[^']+)' column"),
    re.compile(r'column "?(?:[\w]+\.)?(?P<name>[\w]+)"? (?:of relation|does not exist)'),
)


def profile_from_cloud_row(row: dict[str, Any]) -> StoredUser:
    """Map a remote ``users`` row to a canonical profile, stripping the password."""
    data = dict(row)
    password = str(data.pop("password", "") or "")
    data["id"] = f"{CLOUD_ID_PREFIX}{data['email']}"
    return StoredUser(profile=UserProfile.from_dict(data), password=password)


def to_cloud_user_row(profile: UserProfile, password: str) -> dict[str, Any]:
    """Strip fields the remote schema cannot represent (id, preferences, flags)."""
    data = profile.to_dict()
    data["password"] = password
    return {column: data.get(column) for column in USER_COLUMNS}


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {"message": response.text}
    return payload if isinstance(payload, dict) else {"message": str(payload)}


def _offending_column(message: str) -> str | None:
    for pattern in _COLUMN_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group("name")
    return None


def _raise_for_response(response: httpx.Response, table: str) -> None:
    """Translate a PostgREST error response into the storage error taxonomy."""
    if response.is_success:
        return

    payload = _error_payload(response)
    code = str(payload.get("code") or "")
    message = str(payload.get("message") or response.reason_phrase)

    if code in _MISSING_TABLE_CODES:
        raise SchemaMismatch(message, table=table)
    if code in _MISSING_COLUMN_CODES:
        raise SchemaMismatch(message, table=table, field=_offending_column(message) or message)
    if code in _UNIQUE_VIOLATION_CODES or response.status_code == 409:
        raise Conflict(message)
    if response.status_code >= 500 or response.status_code == 429:
        raise NetworkFailure(f"{table}: HTTP {response.status_code} {message}")
    raise StorageError(f"{table}: HTTP {response.status_code} [{code}] {message}")


class CloudBackend:
    """
    PostgREST implementation of :class:`~tigra.protocols.StorageBackend`.

    Parameters
    ----------
    url:
        Project URL, e.g. ``https://<ref>.supabase.co``.
    key:
        Anon (or service) API key.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional ``httpx`` transport, used by tests to stub the network.
    """

    source = "Supabase Cloud"

    def __init__(
        self,
        url: str,
        key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{self._url}/rest/v1",
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._url

    # -- HTTP helpers --------------------------------------------------------

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(
                method, f"/{table}", params=params, json=json, headers=headers
            )
        except httpx.TransportError as exc:
            raise NetworkFailure(f"{table}: {type(exc).__name__}: {exc}") from exc
        _raise_for_response(response, table)
        return response

    async def _select_one(self, table: str, email: str, columns: str) -> dict[str, Any] | None:
        response = await self._request(
            "GET",
            table,
            params={"select": columns, "email": f"eq.{email}", "limit": "1"},
        )
        rows = response.json()
        if not rows:
            return None
        return rows[0]

    async def _upsert(self, table: str, row: dict[str, Any]) -> None:
        await self._request(
            "POST",
            table,
            params={"on_conflict": "email"},
            json=row,
            prefer="resolution=merge-duplicates,return=minimal",
        )

    # -- StorageBackend ------------------------------------------------------

    async def user_exists(self, email: str) -> bool:
        return await self._select_one("users", email, "email") is not None

    async def get_user(self, email: str) -> StoredUser | None:
        row = await self._select_one("users", email, "*")
        if row is None:
            return None
        return profile_from_cloud_row(row)

    async def create_account(self, profile: UserProfile, password: str) -> None:
        await self._request(
            "POST", "users", json=[to_cloud_user_row(profile, password)], prefer="return=minimal"
        )

        companions = (
            ("chats", {"email": profile.email, "sessions": []}),
            ("prefs", {"email": profile.email, "data": {}}),
        )
        for table, row in companions:
            try:
                await self._request("POST", table, json=[row], prefer="return=minimal")
            except StorageError as exc:
                logger.error("[Tigra Cloud] %s init failed for %s: %s", table, profile.email, exc)

    async def get_sessions(self, email: str) -> list[ChatSession]:
        row = await self._select_one("chats", email, "sessions")
        if row is None:
            return []
        return [ChatSession.from_dict(item) for item in row.get("sessions") or []]

    async def put_sessions(self, email: str, sessions: Sequence[ChatSession]) -> None:
        await self._upsert(
            "chats", {"email": email, "sessions": [session.to_dict() for session in sessions]}
        )

    async def get_preferences(self, email: str) -> UserPreferences:
        row = await self._select_one("prefs", email, "data")
        return UserPreferences.from_dict(row.get("data") if row else None)

    async def put_preferences(self, email: str, preferences: UserPreferences) -> None:
        await self._upsert("prefs", {"email": email, "data": preferences.to_dict()})

    async def dump(self) -> dict[str, Any]:
        """Best-effort dump; tables the key cannot read come back as ``None``."""
        tables = ("users", "chats", "prefs")
        results = await asyncio.gather(
            *(self._request("GET", table, params={"select": "*"}) for table in tables),
            return_exceptions=True,
        )
        snapshot: dict[str, Any] = {}
        for table, result in zip(tables, results):
            if isinstance(result, BaseException):
                logger.warning("[Tigra Cloud] Export of %s failed: %s", table, result)
                snapshot[table] = None
                continue
            rows = result.json()
            if table == "users":
                rows = [{k: v for k, v in row.items() if k != "password"} for row in rows]
            snapshot[table] = rows
        return snapshot

    async def close(self) -> None:
        await self._client.aclose()

    def __repr__(self) -> str:
        return f"CloudBackend(url={self._url!r})"
