"""
Assistant client: the surface a UI drives.

Wires the storage facade, session manager, quota gate and completion
provider together.  All state changes happen on one event loop; the only
suspension points are storage calls, provider deltas and ``on_update``
callbacks.

Usage::

    client = AssistantClient.create(provider=AppleFMProvider())
    await client.restore()
    result = await client.send("Hello!", on_update=render)
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union

from .config import AppConfig, load_config
from .models import Message, UserPreferences, UserProfile, now_ms
from .prompts import UserContext, build_system_instruction
from .protocols import CompletionProvider
from .quota import QuotaDecision, QuotaGate
from .sessions import SessionManager
from .settings import SETTINGS_FILENAME, DeviceSettings
from .storage import StorageFacade
from .streaming import StreamAggregator, StreamHandle

logger = logging.getLogger("tigra")

__all__ = [
    "AssistantClient",
    "AuthResult",
    "Registration",
    "TurnResult",
    "TurnStatus",
    "guest_profile",
]

MIN_AGE = 13

UpdateCallback = Callable[[tuple[Message, ...]], Union[Awaitable[None], None]]


def guest_profile() -> UserProfile:
    return UserProfile(email="guest@local", name="Guest User", id="guest", joined_at=0)


@dataclass(frozen=True)
class Registration:
    """Sign-up form fields as supplied by the auth UI."""

    name: str
    email: str
    password: str
    confirm_password: str
    age: str = ""
    gender: str = ""
    country: str = ""
    phone: str = ""
    agreed_to_terms: bool = False

    def validate(self) -> str | None:
        """Return a user-facing error, or ``None`` when the form is acceptable."""
        if not self.email.strip() or not self.name.strip():
            return "Please enter your name and email."
        if not self.password:
            return "Please choose a password."
        if self.password != self.confirm_password:
            return "Passwords do not match."
        if not self.gender:
            return "Please select a gender."
        if not self.country:
            return "Please select a country."
        if not self.agreed_to_terms:
            return "You must agree to the Terms & Conditions."
        try:
            if self.age and int(self.age) < MIN_AGE:
                return f"You must be at least {MIN_AGE} years old to use Tigra."
        except ValueError:
            return "Please enter a valid age."
        return None

    def to_profile(self) -> UserProfile:
        joined = now_ms()
        return UserProfile(
            email=self.email.strip(),
            name=self.name.strip(),
            id=str(joined),
            age=self.age or None,
            gender=self.gender or None,
            country=self.country or None,
            phone=self.phone or None,
            joined_at=joined,
        )


@dataclass(frozen=True)
class AuthResult:
    profile: UserProfile | None = None
    error: str | None = None

    def __bool__(self) -> bool:
        return self.profile is not None


class TurnStatus(enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DETACHED = "detached"
    DENIED = "denied"
    BUSY = "busy"
    EMPTY = "empty"


@dataclass(frozen=True)
class TurnResult:
    status: TurnStatus
    messages: tuple[Message, ...] = ()
    notice: str | None = None

    @property
    def reply(self) -> Message | None:
        if self.status not in (TurnStatus.COMPLETED, TurnStatus.FAILED, TurnStatus.DETACHED):
            return None
        last = self.messages[-1] if self.messages else None
        return last if last is not None and last.role == "model" else None


class AssistantClient:
    """
    One user-facing assistant session for this device.

    Parameters
    ----------
    storage:
        The storage facade.
    provider:
        Completion provider used for model turns.
    quota:
        Guest quota gate; shares the facade's device settings.
    context:
        Environment facts injected into the system instruction.
    """

    def __init__(
        self,
        storage: StorageFacade,
        provider: CompletionProvider,
        quota: QuotaGate,
        *,
        context: UserContext | None = None,
    ) -> None:
        self.storage = storage
        self.provider = provider
        self.quota = quota
        self.sessions = SessionManager(storage)
        self.context = context or UserContext.detect()
        self._profile = guest_profile()
        self._busy = False

    @classmethod
    def create(
        cls,
        provider: CompletionProvider,
        config: AppConfig | None = None,
        *,
        settings: DeviceSettings | None = None,
    ) -> AssistantClient:
        """Build a client with settings and storage rooted at ``config.data_dir``."""
        config = config or load_config()
        settings = settings or DeviceSettings(config.data_dir / SETTINGS_FILENAME)
        storage = StorageFacade(settings, config)
        return cls(storage, provider, QuotaGate(settings, limit=config.guest_limit))

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def profile(self) -> UserProfile:
        return self._profile

    @property
    def preferences(self) -> UserPreferences:
        return self._profile.preferences or UserPreferences()

    @property
    def is_authenticated(self) -> bool:
        return self._profile.is_logged_in

    @property
    def is_guest(self) -> bool:
        return not self.is_authenticated and self.quota.in_guest_mode

    @property
    def is_busy(self) -> bool:
        return self._busy

    def _set_profile(self, profile: UserProfile) -> None:
        self._profile = profile
        self.sessions.set_user(profile if profile.is_logged_in else None)

    # ------------------------------------------------------------------
    # Startup and authentication
    # ------------------------------------------------------------------

    async def restore(self) -> UserProfile:
        """Initial load: resume the signed-in user recorded on this device."""
        self.sessions.begin_load()
        try:
            email = self.storage.get_current_session_user()
            if email:
                profile = await self.storage.get_user_data(email)
                if profile is not None:
                    await self._load_user(profile)
        except Exception:
            logger.exception("[Tigra] Initialization error")
        finally:
            if not self.sessions.loaded and not self.is_authenticated:
                self.sessions.finish_load()
            self.sessions.start_new_session()
        return self._profile

    async def _load_user(self, profile: UserProfile) -> None:
        """Sign *profile* in and load its history and preferences.

        When the history read fails, persistence stays suspended so nothing
        overwrites the stored archive; the next send retries the load.
        """
        self._set_profile(profile.logged_in())
        history, prefs = await asyncio.gather(
            self.storage.fetch_chat_history(profile.email),
            self.storage.load_preferences(profile.email),
        )
        self._set_profile(self._profile.with_preferences(prefs))
        if history is None:
            logger.warning(
                "[Tigra] History for %s is unavailable; saves are paused until it loads",
                profile.email,
            )
            return
        self.sessions.finish_load(history)

    async def _retry_history_load(self) -> None:
        history = await self.storage.fetch_chat_history(self._profile.email)
        if history is None:
            logger.warning("[Tigra] History still unavailable; this turn stays on the device")
            return
        self.sessions.finish_load(history, keep_current=True)

    async def login(self, email: str, password: str) -> AuthResult:
        profile = await self.storage.login_user(email.strip(), password)
        if profile is None:
            return AuthResult(error="Invalid email or password.")
        await self._activate(profile)
        return AuthResult(profile=self._profile)

    async def register(self, registration: Registration) -> AuthResult:
        """Validate, create the account, then sign in."""
        error = registration.validate()
        if error:
            return AuthResult(error=error)

        created = await self.storage.register_user(
            registration.to_profile(), registration.password
        )
        if not created:
            return AuthResult(
                error=self.storage.last_error or "User with this email already exists."
            )
        return await self.login(registration.email, registration.password)

    async def _activate(self, profile: UserProfile) -> None:
        self.sessions.detach_stream()
        await self.sessions.flush()
        self.storage.set_current_session_user(profile.email)
        self.sessions.begin_load()
        await self._load_user(profile)
        self.quota.leave_guest_mode()
        self.sessions.start_new_session()

    async def logout(self) -> None:
        await self.sessions.flush()
        self.storage.clear_current_session()
        self.quota.leave_guest_mode()
        self._profile = guest_profile()
        self.sessions.reset()

    def enter_guest_mode(self) -> QuotaDecision:
        decision = self.quota.enter_guest_mode()
        if decision.allowed:
            self.sessions.start_new_session()
        return decision

    async def update_preferences(self, preferences: UserPreferences) -> bool:
        """Replace preferences wholesale; persisted only when signed in."""
        self._set_profile(self._profile.with_preferences(preferences))
        if not self.is_authenticated:
            return True
        return await self.storage.save_preferences(self._profile.email, preferences)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send(self, text: str, on_update: UpdateCallback | None = None) -> TurnResult:
        """Send one user message and stream the model reply.

        *on_update* receives every buffer snapshot (the user message first,
        then one per applied delta).  Guest sends are metered by the quota
        gate; a denial is returned as :attr:`TurnStatus.DENIED`.
        """
        user_text = text.strip()
        if not user_text:
            return TurnResult(TurnStatus.EMPTY, self.sessions.messages)
        if self._busy:
            return TurnResult(TurnStatus.BUSY, self.sessions.messages)

        if not self.is_authenticated:
            decision = self.quota.check_and_consume()
            if not decision.allowed:
                self.quota.leave_guest_mode()
                return TurnResult(TurnStatus.DENIED, self.sessions.messages, decision.message)

        self._busy = True
        try:
            return await self._run_turn(user_text, on_update)
        finally:
            self._busy = False

    async def _run_turn(self, user_text: str, on_update: UpdateCallback | None) -> TurnResult:
        if self.is_authenticated and not self.sessions.loaded:
            await self._retry_history_load()

        active = self.sessions.active_session
        if active is None:
            active = self.sessions.start_new_session()
        session_id = active.id
        history = self.sessions.messages

        buffer = (*history, Message.create("user", user_text))
        self.sessions.record_turn(buffer)
        await _notify(on_update, buffer)

        handle = StreamHandle(session_id)
        self.sessions.attach_stream(handle)
        aggregator = StreamAggregator(buffer, handle=handle)
        system_instruction = build_system_instruction(self._profile, self.context)

        try:
            try:
                deltas = self.provider.stream(history, system_instruction, user_text)
            except Exception as exc:
                snapshot = aggregator.fail(exc)
                await _notify(on_update, snapshot)
            else:
                async for snapshot in aggregator.run(deltas):
                    await _notify(on_update, snapshot)
        finally:
            self.sessions.release_stream(handle)

        final = aggregator.messages
        self.sessions.record_turn(final, session_id=handle.session_id)

        if handle.detached:
            return TurnResult(TurnStatus.DETACHED, final)
        if aggregator.failed:
            return TurnResult(TurnStatus.FAILED, final)
        return TurnResult(TurnStatus.COMPLETED, final)

    # ------------------------------------------------------------------
    # Configuration and operational tooling
    # ------------------------------------------------------------------

    async def reinitialize(self) -> UserProfile:
        """Tear down the storage backend and re-run startup against the new one."""
        self.sessions.detach_stream()
        await self.sessions.flush()
        await self.storage.reinitialize()
        self._profile = guest_profile()
        self.sessions.reset()
        return await self.restore()

    async def set_cloud_config(self, url: str, key: str) -> UserProfile:
        self.storage.set_cloud_config(url, key)
        return await self.reinitialize()

    async def disconnect_cloud(self) -> UserProfile:
        self.storage.disconnect_cloud()
        return await self.reinitialize()

    async def export_data(self) -> dict[str, Any]:
        return await self.storage.export_all_data()

    async def factory_reset(self) -> None:
        """Wipe local records and device settings, returning to a fresh guest state."""
        self.sessions.detach_stream()
        await self.sessions.flush()
        await self.storage.delete_database()
        self._profile = guest_profile()
        self.sessions.reset()

    async def close(self) -> None:
        self.sessions.detach_stream()
        await self.sessions.flush()
        await self.storage.close()


async def _notify(callback: UpdateCallback | None, snapshot: tuple[Message, ...]) -> None:
    if callback is None:
        return
    result = callback(snapshot)
    if inspect.isawaitable(result):
        await result
