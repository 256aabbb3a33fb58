"""
Canonical value types shared by every Tigra layer.

Persisted shapes use the camelCase keys of the Tigra web client
(``joinedAt``, ``createdAt``, ``maritalStatus``) so that records written by
either storage backend stay readable by both.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Literal

__all__ = [
    "DEFAULT_SESSION_TITLE",
    "TITLE_MAX_CHARS",
    "ChatSession",
    "CloudConfig",
    "Message",
    "Role",
    "UserPreferences",
    "UserProfile",
    "derive_title",
    "new_id",
    "now_ms",
]

Role = Literal["user", "model"]

DEFAULT_SESSION_TITLE = "New Session"
TITLE_MAX_CHARS = 30
_ELLIPSIS = "..."

_id_lock = threading.Lock()
_last_id = 0


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Return a time-derived id, strictly increasing within this process."""
    global _last_id
    with _id_lock:
        candidate = now_ms()
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
    return str(candidate)


def derive_title(text: str) -> str:
    """Session title from the first user message: 30 chars, ``...`` if cut."""
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + _ELLIPSIS
    return text


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class Message:
    """One chat message. Frozen; streaming produces new snapshots."""

    id: str
    role: Role
    content: str
    timestamp: int

    @classmethod
    def create(cls, role: Role, content: str, *, message_id: str | None = None) -> Message:
        return cls(id=message_id or new_id(), role=role, content=content, timestamp=now_ms())

    def with_content(self, content: str) -> Message:
        return replace(self, content=content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        role = str(data["role"])
        if role not in ("user", "model"):
            raise ValueError(f"Unknown message role: {role!r}")
        return cls(
            id=str(data["id"]),
            role=role,  # type: ignore[arg-type]
            content=str(data.get("content", "")),
            timestamp=int(data.get("timestamp", 0)),
        )


@dataclass(frozen=True)
class ChatSession:
    """A titled, ordered conversation owned by one user."""

    id: str
    title: str = DEFAULT_SESSION_TITLE
    messages: tuple[Message, ...] = ()
    created_at: int = field(default_factory=now_ms)

    @classmethod
    def draft(cls) -> ChatSession:
        return cls(id=new_id())

    @property
    def is_draft(self) -> bool:
        return not self.messages

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatSession:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or DEFAULT_SESSION_TITLE),
            messages=tuple(Message.from_dict(item) for item in data.get("messages") or []),
            created_at=int(data.get("createdAt", 0)),
        )


@dataclass(frozen=True)
class UserPreferences:
    """Free-form personalization fields. Saved wholesale, never merged."""

    country: str | None = None
    location: str | None = None
    marital_status: str | None = None
    occupation: str | None = None
    interests: str | None = None

    def is_empty(self) -> bool:
        return not any(self.to_dict().values())

    def to_dict(self) -> dict[str, str]:
        """Persistable representation; unset fields are omitted."""
        raw = {
            "country": self.country,
            "location": self.location,
            "maritalStatus": self.marital_status,
            "occupation": self.occupation,
            "interests": self.interests,
        }
        return {key: value for key, value in raw.items() if value}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UserPreferences:
        data = data or {}
        return cls(
            country=_optional_str(data.get("country")),
            location=_optional_str(data.get("location")),
            marital_status=_optional_str(data.get("maritalStatus")),
            occupation=_optional_str(data.get("occupation")),
            interests=_optional_str(data.get("interests")),
        )


@dataclass(frozen=True)
class UserProfile:
    """Identity record. Never carries a password."""

    email: str
    name: str
    id: str = ""
    age: str | None = None
    gender: str | None = None
    country: str | None = None
    phone: str | None = None
    joined_at: int = field(default_factory=now_ms)
    is_logged_in: bool = False
    preferences: UserPreferences | None = None

    def with_preferences(self, preferences: UserPreferences) -> UserProfile:
        return replace(self, preferences=preferences)

    def logged_in(self) -> UserProfile:
        return replace(self, is_logged_in=True)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "age": self.age,
            "gender": self.gender,
            "country": self.country,
            "phone": self.phone,
            "joinedAt": self.joined_at,
            "isLoggedIn": self.is_logged_in,
        }
        if self.preferences is not None:
            data["preferences"] = self.preferences.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserProfile:
        raw_prefs = data.get("preferences")
        return cls(
            email=str(data["email"]),
            name=str(data.get("name") or ""),
            id=str(data.get("id") or ""),
            age=_optional_str(data.get("age")),
            gender=_optional_str(data.get("gender")),
            country=_optional_str(data.get("country")),
            phone=_optional_str(data.get("phone")),
            joined_at=int(data.get("joinedAt") or 0),
            is_logged_in=bool(data.get("isLoggedIn", False)),
            preferences=UserPreferences.from_dict(raw_prefs) if raw_prefs is not None else None,
        )


@dataclass(frozen=True)
class CloudConfig:
    """User-supplied cloud endpoint override."""

    url: str
    key: str

    def is_complete(self) -> bool:
        return bool(self.url.strip() and self.key.strip())

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "key": self.key}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CloudConfig:
        return cls(url=str(data.get("url") or ""), key=str(data.get("key") or ""))
