"""
Hybrid storage facade.

One backend-agnostic contract for profile, history and preference
persistence.  Exactly one backend adapter is active for the lifetime of a
facade; it is selected once, lazily, and only replaced by
:meth:`StorageFacade.reinitialize`.

Every public operation is total: adapter errors are logged and mapped to
``False`` / ``None`` / empty results so callers never see raw exceptions.

Usage::

    facade = StorageFacade(DeviceSettings(path), load_config())
    if await facade.register_user(profile, "s3cret"):
        user = await facade.login_user(profile.email, "s3cret")
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from .cloud_backend import CloudBackend
from .config import AppConfig
from .exceptions import Conflict, NetworkFailure, SchemaMismatch, StorageError
from .local_backend import DB_FILENAME, LocalBackend
from .models import ChatSession, CloudConfig, UserPreferences, UserProfile
from .protocols import StorageBackend
from .security import hash_password, verify_password
from .settings import DeviceSettings

logger = logging.getLogger("tigra")

T = TypeVar("T")

__all__ = [
    "OPERATION_UNAVAILABLE",
    "BackendKind",
    "StorageFacade",
    "build_backend",
    "select_backend",
]

OPERATION_UNAVAILABLE = "This operation is currently unavailable. Please try again later."


class BackendKind(enum.Enum):
    LOCAL = "local"
    CLOUD_OVERRIDE = "cloud-override"
    CLOUD_DEFAULT = "cloud-default"


def select_backend(
    settings: DeviceSettings, config: AppConfig
) -> tuple[BackendKind, CloudConfig | None]:
    """Decide which adapter to use.

    A disconnect marker pins the device to local storage; otherwise an explicit
    override wins over the configured default cloud, and local storage is the
    last resort.
    """
    if settings.cloud_disconnected:
        return BackendKind.LOCAL, None
    override = settings.cloud_config
    if override is not None:
        return BackendKind.CLOUD_OVERRIDE, override
    if config.has_default_cloud:
        return BackendKind.CLOUD_DEFAULT, CloudConfig(
            url=config.default_cloud_url, key=config.default_cloud_key
        )
    return BackendKind.LOCAL, None


def build_backend(
    kind: BackendKind, cloud: CloudConfig | None, config: AppConfig
) -> StorageBackend:
    if kind is BackendKind.LOCAL or cloud is None:
        return LocalBackend(config.data_dir / DB_FILENAME)
    return CloudBackend(cloud.url, cloud.key, timeout=config.request_timeout)


class StorageFacade:
    """
    Backend-agnostic persistence for users, chat archives and preferences.

    Parameters
    ----------
    settings:
        Device-scoped settings (current user pointer, cloud override).
    config:
        Process configuration (data directory, default cloud).
    backend:
        Explicit adapter to use instead of running backend selection.
    """

    def __init__(
        self,
        settings: DeviceSettings,
        config: AppConfig,
        backend: StorageBackend | None = None,
    ) -> None:
        self._settings = settings
        self._config = config
        self._backend = backend
        self._kind: BackendKind | None = None if backend is None else _kind_of(backend)
        self.reinitialize_required = False
        self.last_error: str | None = None

    # -- backend lifecycle ---------------------------------------------------

    @property
    def backend(self) -> StorageBackend:
        """The active adapter, constructed on first use."""
        if self._backend is None:
            kind, cloud = select_backend(self._settings, self._config)
            self._backend = build_backend(kind, cloud, self._config)
            self._kind = kind
            logger.info("[Tigra Storage] Using %s backend (%s)", self._backend.source, kind.value)
        return self._backend

    @property
    def source(self) -> str:
        try:
            return self.backend.source
        except Exception:
            logger.exception("[Tigra Storage] Backend could not be opened")
            return "unavailable"

    @property
    def kind(self) -> BackendKind:
        """Which adapter is (or would be) active; never opens the backend."""
        if self._kind is not None:
            return self._kind
        return select_backend(self._settings, self._config)[0]

    def is_cloud_enabled(self) -> bool:
        return self.kind is not BackendKind.LOCAL

    def is_default_cloud(self) -> bool:
        """True when the configured default cloud is in use (no user override)."""
        return self.kind is BackendKind.CLOUD_DEFAULT

    async def reinitialize(self, backend: StorageBackend | None = None) -> StorageBackend:
        """Tear down the active adapter and select a new one."""
        old = self._backend
        self._backend = None
        self._kind = None
        if old is not None:
            try:
                await old.close()
            except Exception:
                logger.exception("[Tigra Storage] Error closing %s", type(old).__name__)
        if backend is not None:
            self._backend = backend
            self._kind = _kind_of(backend)
        self.reinitialize_required = False
        self.last_error = None
        return self.backend

    async def close(self) -> None:
        if self._backend is not None:
            await self._backend.close()
            self._backend = None

    # -- guarded execution ---------------------------------------------------

    async def _guard(
        self,
        label: str,
        operation: Callable[[StorageBackend], Awaitable[T]],
        default: T,
    ) -> T:
        """Run *operation* against the active adapter, mapping every failure to *default*.

        The adapter is resolved inside the guard so a backend that cannot be
        opened (unwritable data dir, corrupt database file) degrades the same
        way as a failing call.
        """
        try:
            return await operation(self.backend)
        except Conflict as exc:
            logger.info("[Tigra Storage] %s: %s", label, exc)
        except SchemaMismatch as exc:
            self.last_error = exc.diagnostic
            logger.error("[Tigra Storage] %s: %s", label, exc.diagnostic)
        except NetworkFailure as exc:
            logger.warning("[Tigra Storage] %s: network failure: %s", label, exc)
        except StorageError as exc:
            logger.error("[Tigra Storage] %s: %s", label, exc)
        except Exception:
            self.last_error = OPERATION_UNAVAILABLE
            logger.exception("[Tigra Storage] %s: unexpected failure", label)
        return default

    # -- users ---------------------------------------------------------------

    async def user_exists(self, email: str) -> bool:
        return await self._guard("userExists", lambda backend: backend.user_exists(email), False)

    async def register_user(self, profile: UserProfile, password: str) -> bool:
        """Create an account. ``False`` if the email is taken or the write fails."""
        self.last_error = None
        if await self.user_exists(profile.email):
            return False

        account = replace(profile, is_logged_in=False, preferences=None)

        async def _create(backend: StorageBackend) -> bool:
            await backend.create_account(account, hash_password(password))
            return True

        return await self._guard("registerUser", _create, False)

    async def login_user(self, email: str, password: str) -> UserProfile | None:
        stored = await self._guard("loginUser", lambda backend: backend.get_user(email), None)
        if stored is None or not verify_password(password, stored.password):
            return None
        return stored.profile.logged_in()

    async def get_user_data(self, email: str) -> UserProfile | None:
        """Profile fetch for session restore; authenticated when found."""
        stored = await self._guard("getUserData", lambda backend: backend.get_user(email), None)
        if stored is None:
            return None
        return stored.profile.logged_in()

    # -- chats & preferences -------------------------------------------------

    async def save_chat_history(self, email: str, sessions: Sequence[ChatSession]) -> bool:
        kept = [session for session in sessions if not session.is_draft]

        async def _save(backend: StorageBackend) -> bool:
            await backend.put_sessions(email, kept)
            return True

        return await self._guard("saveChatHistory", _save, False)

    async def fetch_chat_history(self, email: str) -> list[ChatSession] | None:
        """Like :meth:`load_chat_history`, but ``None`` when the read failed.

        Lets callers tell "no history" apart from "history unavailable".
        """
        sessions = await self._guard(
            "loadChatHistory", lambda backend: backend.get_sessions(email), None
        )
        if sessions is None:
            return None
        return [session for session in sessions if not session.is_draft]

    async def load_chat_history(self, email: str) -> list[ChatSession]:
        sessions = await self.fetch_chat_history(email)
        return sessions if sessions is not None else []

    async def save_preferences(self, email: str, preferences: UserPreferences) -> bool:
        async def _save(backend: StorageBackend) -> bool:
            await backend.put_preferences(email, preferences)
            return True

        return await self._guard("savePreferences", _save, False)

    async def load_preferences(self, email: str) -> UserPreferences:
        return await self._guard(
            "loadPreferences", lambda backend: backend.get_preferences(email), UserPreferences()
        )

    # -- device session pointer ----------------------------------------------

    def set_current_session_user(self, email: str) -> None:
        self._settings.set_current_user(email)

    def get_current_session_user(self) -> str | None:
        return self._settings.current_user

    def clear_current_session(self) -> None:
        self._settings.clear_current_user()

    # -- configuration -------------------------------------------------------

    def set_cloud_config(self, url: str, key: str) -> None:
        """Persist a cloud override. Takes effect after :meth:`reinitialize`."""
        config = CloudConfig(url=url.strip(), key=key.strip())
        if not config.is_complete():
            raise ValueError("Both a cloud URL and key are required")
        self._settings.set_cloud_config(config)
        self.reinitialize_required = True

    def disconnect_cloud(self) -> None:
        """Pin the device to local storage. Takes effect after :meth:`reinitialize`."""
        self._settings.mark_cloud_disconnected()
        self.reinitialize_required = True

    # -- operational tooling -------------------------------------------------

    async def export_all_data(self) -> dict[str, Any]:
        """Best-effort dump of all three collections from the active backend."""
        snapshot = await self._guard("exportAllData", lambda backend: backend.dump(), None)
        backend = self._backend
        result: dict[str, Any] = {
            "source": backend.source if backend is not None else "unavailable",
            "exported_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        }
        if snapshot is None:
            result.update(users=None, chats=None, prefs=None, error=OPERATION_UNAVAILABLE)
        else:
            result.update(
                users=snapshot.get("users"),
                chats=snapshot.get("chats"),
                prefs=snapshot.get("prefs"),
            )
        return result

    def storage_estimate(self) -> dict[str, int]:
        """Bytes used by local files under the data directory."""
        data_dir = Path(self._config.data_dir)
        usage = 0
        if data_dir.is_dir():
            usage = sum(path.stat().st_size for path in data_dir.rglob("*") if path.is_file())
        return {"usage": usage}

    async def delete_database(self) -> None:
        """Irreversibly wipe device settings and local records. Cloud rows are untouched."""
        self._settings.clear()
        backend = self._backend
        if isinstance(backend, LocalBackend):
            backend.destroy()
            self._backend = None
            self._kind = None
        default_path = self._config.data_dir / DB_FILENAME
        for suffix in ("", "-wal", "-shm"):
            Path(f"{default_path}{suffix}").unlink(missing_ok=True)
        logger.warning("[Tigra Storage] Local database deleted")

    def __repr__(self) -> str:
        active = type(self._backend).__name__ if self._backend is not None else "unselected"
        return f"StorageFacade(backend={active})"


def _kind_of(backend: StorageBackend) -> BackendKind:
    return BackendKind.LOCAL if isinstance(backend, LocalBackend) else BackendKind.CLOUD_OVERRIDE
