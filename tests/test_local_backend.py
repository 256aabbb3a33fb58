"""Tests for tigra.local_backend — sqlite3 record store."""

from __future__ import annotations

import pytest

from tigra.exceptions import Conflict, StorageError
from tigra.local_backend import DB_FILENAME, LocalBackend, profile_from_local_row
from tigra.models import UserPreferences
from tigra.protocols import StorageBackend

from .conftest import make_profile, make_session


def test_satisfies_protocol(local_backend):
    assert isinstance(local_backend, StorageBackend)
    assert local_backend.source == "SQLite (Local)"


def test_profile_from_local_row_strips_password():
    stored = profile_from_local_row({"email": "a@b.c", "name": "A", "password": "pw"})
    assert stored.password == "pw"
    assert "password" not in stored.profile.to_dict()


# ========================================================================
# Accounts
# ========================================================================


class TestAccounts:
    @pytest.mark.asyncio
    async def test_create_and_read(self, local_backend):
        profile = make_profile()
        await local_backend.create_account(profile, "hash")

        assert await local_backend.user_exists(profile.email)
        stored = await local_backend.get_user(profile.email)
        assert stored.password == "hash"
        assert stored.profile.email == profile.email
        assert stored.profile.id == profile.id
        assert not stored.profile.is_logged_in

    @pytest.mark.asyncio
    async def test_companion_rows_start_empty(self, local_backend):
        await local_backend.create_account(make_profile(), "hash")
        assert await local_backend.get_sessions("ada@example.com") == []
        assert await local_backend.get_preferences("ada@example.com") == UserPreferences()

    @pytest.mark.asyncio
    async def test_duplicate_email_conflicts(self, local_backend):
        await local_backend.create_account(make_profile(), "hash")
        with pytest.raises(Conflict):
            await local_backend.create_account(make_profile(name="Other"), "hash")

    @pytest.mark.asyncio
    async def test_unknown_user(self, local_backend):
        assert await local_backend.get_user("nobody@example.com") is None
        assert not await local_backend.user_exists("nobody@example.com")


# ========================================================================
# Chats and preferences
# ========================================================================


class TestCollections:
    @pytest.mark.asyncio
    async def test_sessions_overwrite_wholesale(self, local_backend):
        email = "ada@example.com"
        await local_backend.put_sessions(email, [make_session("1", "a", "b"), make_session("2", "c")])
        await local_backend.put_sessions(email, [make_session("3", "d")])
        assert await local_backend.get_sessions(email) == [make_session("3", "d")]

    @pytest.mark.asyncio
    async def test_preferences_overwrite_wholesale(self, local_backend):
        email = "ada@example.com"
        await local_backend.put_preferences(email, UserPreferences(location="Paris", occupation="Dev"))
        await local_backend.put_preferences(email, UserPreferences(interests="chess"))
        assert await local_backend.get_preferences(email) == UserPreferences(interests="chess")

    @pytest.mark.asyncio
    async def test_corrupt_record_raises_storage_error(self, local_backend):
        local_backend._write(
            "INSERT INTO chats (email, sessions) VALUES (?, ?)", ("ada@example.com", "{not json")
        )
        with pytest.raises(StorageError, match="Corrupt"):
            await local_backend.get_sessions("ada@example.com")


# ========================================================================
# Dump / destroy
# ========================================================================


@pytest.mark.asyncio
async def test_dump_has_all_tables_without_passwords(local_backend):
    await local_backend.create_account(make_profile(), "hash")
    await local_backend.put_sessions("ada@example.com", [make_session("1", "hi")])

    snapshot = await local_backend.dump()

    assert set(snapshot) == {"users", "chats", "prefs"}
    assert snapshot["users"][0]["email"] == "ada@example.com"
    assert "password" not in snapshot["users"][0]
    assert snapshot["chats"][0]["sessions"][0]["id"] == "1"
    assert snapshot["prefs"] == [{"email": "ada@example.com", "data": {}}]


def test_destroy_removes_files(tmp_path):
    backend = LocalBackend(tmp_path / DB_FILENAME)
    assert (tmp_path / DB_FILENAME).exists()
    backend.destroy()
    assert not (tmp_path / DB_FILENAME).exists()
    assert not (tmp_path / f"{DB_FILENAME}-wal").exists()
