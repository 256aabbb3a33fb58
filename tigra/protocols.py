"""
Pluggable backend protocols for Tigra.

Defines structural subtyping (typing.Protocol) interfaces for the two external
capabilities Tigra talks to: a storage backend (local sqlite or a cloud table
service) and a completion provider that streams text deltas.

Backends are constructed explicitly and handed to the objects that use them:

    from tigra.local_backend import LocalBackend
    from tigra.storage import StorageFacade

    facade = StorageFacade(settings, config, backend=LocalBackend(path))
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol, runtime_checkable

from .exceptions import ProviderFailure, provider_setup_error
from .models import ChatSession, Message, UserPreferences, UserProfile

logger = logging.getLogger("tigra")

__all__ = [
    "AppleFMProvider",
    "CompletionProvider",
    "StorageBackend",
    "StoredUser",
    "format_transcript",
]


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StoredUser:
    """A user record as read from a backend: canonical profile plus secret."""

    profile: UserProfile
    password: str


@runtime_checkable
class StorageBackend(Protocol):
    """Structural interface for one backend adapter.

    Adapters raise :mod:`tigra.exceptions` storage errors; mapping them to
    total results is the facade's job.
    """

    source: str

    async def user_exists(self, email: str) -> bool: ...

    async def get_user(self, email: str) -> StoredUser | None: ...

    async def create_account(self, profile: UserProfile, password: str) -> None:
        """Write the user row plus empty chat and preference companions."""
        ...

    async def get_sessions(self, email: str) -> list[ChatSession]: ...

    async def put_sessions(self, email: str, sessions: Sequence[ChatSession]) -> None: ...

    async def get_preferences(self, email: str) -> UserPreferences: ...

    async def put_preferences(self, email: str, preferences: UserPreferences) -> None: ...

    async def dump(self) -> dict[str, Any]:
        """Return every row of the three collections as plain data."""
        ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Completion provider
# ---------------------------------------------------------------------------


@runtime_checkable
class CompletionProvider(Protocol):
    """Structural interface for a streaming chat-completion provider."""

    def stream(
        self,
        history: Sequence[Message],
        system_instruction: str,
        user_turn: str,
    ) -> AsyncIterator[str]:
        """Return a lazy, finite, non-restartable sequence of text deltas."""
        ...


def format_transcript(history: Sequence[Message]) -> str:
    """Render prior turns for providers that only accept a string prompt."""
    lines = []
    for message in history:
        speaker = "User" if message.role == "user" else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return "\n\n".join(lines)


@lru_cache(maxsize=1)
def _import_apple_fm_sdk() -> Any:
    """Import ``apple_fm_sdk`` lazily so protocol import does not hard-require it."""
    return importlib.import_module("apple_fm_sdk")


class AppleFMProvider:
    """
    Streams completions from the on-device Apple Foundation Model.

    The SDK's ``stream_response`` yields cumulative snapshots; this provider
    converts them to deltas.  History is replayed as a transcript block inside
    the prompt because SDK sessions cannot be seeded with prior turns.
    """

    def __init__(self) -> None:
        self._model: Any = None

    def check_available(self) -> None:
        """Raise :class:`ProviderSetupError` unless the on-device model can run here."""
        self._ensure_model()

    def _ensure_model(self) -> Any:
        if self._model is not None:
            return self._model
        try:
            model = _import_apple_fm_sdk().SystemLanguageModel()
            available, reason = model.is_available()
        except Exception as exc:
            raise provider_setup_error(
                f"{type(exc).__name__}: {exc}", context="AppleFMProvider"
            ) from exc
        if not available:
            raise provider_setup_error(
                f"Foundation Model is not available: {reason}", context="AppleFMProvider"
            )
        self._model = model
        return model

    def _build_prompt(self, history: Sequence[Message], user_turn: str) -> str:
        if not history:
            return user_turn
        return "\n\n".join(
            [
                "Conversation so far:",
                format_transcript(history),
                "Current user message:",
                user_turn,
            ]
        )

    async def stream(
        self,
        history: Sequence[Message],
        system_instruction: str,
        user_turn: str,
    ) -> AsyncIterator[str]:
        model = self._ensure_model()
        fm_sdk = _import_apple_fm_sdk()
        session = fm_sdk.LanguageModelSession(model=model, instructions=system_instruction)
        prompt = self._build_prompt(history, user_turn)

        previous = ""
        try:
            async for snapshot in session.stream_response(prompt):
                text = str(snapshot)
                if text.startswith(previous):
                    delta = text[len(previous) :]
                else:
                    # The SDK revised earlier text; only forward what is new.
                    logger.debug("[Tigra Provider] Non-monotonic snapshot, resyncing")
                    delta = text[len(previous) :] if len(text) > len(previous) else ""
                previous = text
                if delta:
                    yield delta
        except Exception as exc:
            raise ProviderFailure(f"Apple FM stream failed: {exc}") from exc
