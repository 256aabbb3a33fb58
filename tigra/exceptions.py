"""
Error taxonomy and setup diagnostics for Tigra.

Storage adapters raise the :class:`StorageError` subclasses below; the storage
facade catches them and degrades to empty results, so none of these reach the
session layer.  The schema-setup and provider-setup diagnostics are built here
so every surface (facade, CLI, logs) prints the same guidance.
"""

from __future__ import annotations

__all__ = [
    "Conflict",
    "NetworkFailure",
    "NotFound",
    "ProviderFailure",
    "ProviderSetupError",
    "SchemaMismatch",
    "StorageError",
    "TigraError",
    "provider_setup_error",
    "schema_setup_message",
]


class TigraError(RuntimeError):
    """Base class for every error raised by Tigra."""


class StorageError(TigraError):
    """Raised by a storage backend adapter."""


class NotFound(StorageError):
    """The requested record does not exist."""


class Conflict(StorageError):
    """A record with the same email already exists."""


class SchemaMismatch(StorageError):
    """The remote schema is missing an expected table or column."""

    def __init__(self, message: str, *, table: str | None = None, field: str | None = None):
        super().__init__(message)
        self.table = table
        self.field = field

    @property
    def diagnostic(self) -> str:
        return schema_setup_message(self.table, field=self.field, detail=str(self))


class NetworkFailure(StorageError):
    """Transient transport failure talking to the cloud backend."""


class ProviderFailure(TigraError):
    """The completion provider failed while streaming a response."""


class ProviderSetupError(TigraError):
    """Raised when the completion provider SDK or model is unavailable."""


def schema_setup_message(
    table: str | None,
    *,
    field: str | None = None,
    detail: str | None = None,
) -> str:
    """Build the actionable message for a remote schema problem."""
    if field:
        message = (
            "Schema Mismatch: the app sent a field that doesn't exist in the database "
            f"({field!r})."
        )
    elif table:
        message = (
            f"Database Error: Table {table!r} does not exist. "
            "Please run the SQL setup script for the cloud project."
        )
    else:
        message = "Database Error: the cloud schema does not match what Tigra expects."
    if detail and detail not in message:
        message = f"{message} {detail}"
    return message


_PROVIDER_CHECKLIST = (
    "Tigra chats through the on-device Apple Foundation Model. To enable it:",
    "  - run macOS 26 or newer on Apple Silicon with Apple Intelligence turned on",
    "  - install the provider extra: pip install 'tigra-client[apple]'",
    "  - let the model finish downloading (System Settings > Apple Intelligence)",
)


def provider_setup_error(reason: str, *, context: str = "tigra") -> ProviderSetupError:
    """Build (not raise) a :class:`ProviderSetupError` that carries the setup checklist."""
    headline = f"[{context}] Completion provider unavailable: {reason}"
    return ProviderSetupError("\n".join([headline, "", *_PROVIDER_CHECKLIST]))
