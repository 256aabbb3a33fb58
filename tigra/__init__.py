"""
Tigra public API.

The storage, session and quota layers import eagerly; the Apple Foundation
Models provider is resolved lazily so storage tooling and the CLI run even
when ``apple_fm_sdk`` is not installed in the current interpreter.
"""

from __future__ import annotations

from typing import Any

from .client import AssistantClient, AuthResult, Registration, TurnResult, TurnStatus
from .config import AppConfig, load_config
from .exceptions import (
    Conflict,
    NetworkFailure,
    NotFound,
    ProviderFailure,
    ProviderSetupError,
    SchemaMismatch,
    StorageError,
    TigraError,
)
from .models import ChatSession, CloudConfig, Message, UserPreferences, UserProfile
from .quota import QuotaDecision, QuotaGate
from .sessions import SessionManager
from .settings import DeviceSettings
from .storage import StorageFacade
from .streaming import FALLBACK_MESSAGE, StreamAggregator, StreamHandle

__all__ = [
    "FALLBACK_MESSAGE",
    "AppConfig",
    "AppleFMProvider",
    "AssistantClient",
    "AuthResult",
    "ChatSession",
    "CloudConfig",
    "Conflict",
    "DeviceSettings",
    "Message",
    "NetworkFailure",
    "NotFound",
    "ProviderFailure",
    "ProviderSetupError",
    "QuotaDecision",
    "QuotaGate",
    "Registration",
    "SchemaMismatch",
    "SessionManager",
    "StorageError",
    "StorageFacade",
    "StreamAggregator",
    "StreamHandle",
    "TigraError",
    "TurnResult",
    "TurnStatus",
    "UserPreferences",
    "UserProfile",
    "load_config",
]


def __getattr__(name: str) -> Any:
    if name == "AppleFMProvider":
        from .protocols import AppleFMProvider

        return AppleFMProvider

    raise AttributeError(f"module 'tigra' has no attribute {name!r}")
