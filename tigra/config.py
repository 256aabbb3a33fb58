"""Process configuration read from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

__all__ = ["DEFAULT_DATA_DIR", "GUEST_LIMIT", "AppConfig", "load_config"]

DEFAULT_DATA_DIR = Path.home() / ".tigra"
GUEST_LIMIT = 5
_DEFAULT_REQUEST_TIMEOUT = 10.0


@dataclass(frozen=True)
class AppConfig:
    """Settings fixed for the lifetime of the process.

    ``default_cloud_url`` / ``default_cloud_key`` play the role of the
    compiled-in cloud project; leaving either empty means there is no default
    cloud and the local backend is used unless the user configures one.
    """

    data_dir: Path = DEFAULT_DATA_DIR
    default_cloud_url: str = ""
    default_cloud_key: str = ""
    guest_limit: int = GUEST_LIMIT
    request_timeout: float = _DEFAULT_REQUEST_TIMEOUT

    @property
    def has_default_cloud(self) -> bool:
        return bool(self.default_cloud_url and self.default_cloud_key)


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Build an :class:`AppConfig` from ``TIGRA_*`` environment variables."""
    env = os.environ if environ is None else environ

    data_dir = env.get("TIGRA_DATA_DIR")
    timeout = env.get("TIGRA_REQUEST_TIMEOUT")
    try:
        request_timeout = float(timeout) if timeout else _DEFAULT_REQUEST_TIMEOUT
    except ValueError as exc:
        raise ValueError(f"TIGRA_REQUEST_TIMEOUT must be a number, got {timeout!r}") from exc
    if request_timeout <= 0:
        raise ValueError("TIGRA_REQUEST_TIMEOUT must be > 0")

    return AppConfig(
        data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR,
        default_cloud_url=env.get("TIGRA_CLOUD_URL", "").strip(),
        default_cloud_key=env.get("TIGRA_CLOUD_KEY", "").strip(),
        request_timeout=request_timeout,
    )
