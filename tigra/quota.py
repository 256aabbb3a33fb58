"""Guest usage quota.

Unauthenticated sends are metered by a device-scoped counter that survives
restarts and new chat sessions.  Once the ceiling is reached every further
guest send, and entering guest mode itself, is denied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import GUEST_LIMIT
from .settings import DeviceSettings

logger = logging.getLogger("tigra")

__all__ = ["GUEST_ENTRY_MESSAGE", "GUEST_LIMIT_MESSAGE", "QuotaDecision", "QuotaGate"]

GUEST_LIMIT_MESSAGE = (
    "You've reached the {limit}-message guest limit. "
    "Please sign in or create an account to continue using Tigra."
)
GUEST_ENTRY_MESSAGE = "You have reached the free guest limit. Please sign up to continue."


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check. Denial is a result, not an exception."""

    allowed: bool
    remaining: int
    message: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


class QuotaGate:
    """Persistent per-device counter of guest messages."""

    def __init__(self, settings: DeviceSettings, limit: int = GUEST_LIMIT) -> None:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        self._settings = settings
        self._limit = limit

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def used(self) -> int:
        return self._settings.guest_count

    @property
    def remaining(self) -> int:
        return max(self._limit - self.used, 0)

    @property
    def exhausted(self) -> bool:
        return self.used >= self._limit

    def check_and_consume(self) -> QuotaDecision:
        """Consume one guest message if any remain. Denials never increment."""
        used = self.used
        if used >= self._limit:
            logger.info("[Tigra Quota] Guest limit reached (%d/%d)", used, self._limit)
            return QuotaDecision(
                allowed=False,
                remaining=0,
                message=GUEST_LIMIT_MESSAGE.format(limit=self._limit),
            )
        used += 1
        self._settings.guest_count = used
        return QuotaDecision(allowed=True, remaining=self._limit - used)

    def enter_guest_mode(self) -> QuotaDecision:
        """Switch the device into guest mode unless the quota is spent."""
        if self.exhausted:
            return QuotaDecision(allowed=False, remaining=0, message=GUEST_ENTRY_MESSAGE)
        self._settings.guest_mode = True
        return QuotaDecision(allowed=True, remaining=self.remaining)

    def leave_guest_mode(self) -> None:
        self._settings.guest_mode = False

    @property
    def in_guest_mode(self) -> bool:
        return self._settings.guest_mode
