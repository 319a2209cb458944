from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


# Environment variable names
ENV_API_URL = "OTRTA_API_URL"
ENV_ENABLE_AUTH = "OTRTA_ENABLE_AUTHENTICATION"
ENV_API_KEY = "OTRTA_API_KEY"
ENV_POLL_INTERVAL = "OTRTA_POLL_INTERVAL"
ENV_GRACE_DELAY = "OTRTA_GRACE_DELAY"
ENV_HTTP_TIMEOUT = "OTRTA_HTTP_TIMEOUT"
ENV_SESSION_PATH = "OTRTA_SESSION_PATH"
ENV_SESSION_FERNET_KEY = "OTRTA_SESSION_FERNET_KEY"
ENV_SESSION_BUCKET = "OTRTA_SESSION_BUCKET"
ENV_SESSION_KEY = "OTRTA_SESSION_KEY"

DEFAULT_API_URL = "http://localhost:3333"
DEFAULT_SESSION_PATH = os.path.join(".otrta", "session.json")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid numeric configuration: {name}={raw!r}") from exc
    if value < 0:
        raise RuntimeError(f"Configuration must be >= 0: {name}")
    return value


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ClientConfig:
    """
    Runtime configuration for the dashboard client core.

    Every field has a default except the S3 session settings, which are only
    required together: when `session_bucket` is set, `session_key` must be too.
    """

    api_url: str = DEFAULT_API_URL
    enable_authentication: bool = False
    api_key: Optional[str] = None
    poll_interval: float = 2.0
    grace_delay: float = 2.0
    http_timeout: float = 30.0
    session_path: str = DEFAULT_SESSION_PATH
    session_fernet_key: Optional[str] = None
    session_bucket: Optional[str] = None
    session_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ClientConfig":
        bucket = _getenv(ENV_SESSION_BUCKET)
        key = _getenv(ENV_SESSION_KEY)
        if bucket:
            key = _require(key, ENV_SESSION_KEY)
        return cls(
            api_url=(_getenv(ENV_API_URL, DEFAULT_API_URL) or DEFAULT_API_URL).rstrip("/"),
            enable_authentication=_getenv_bool(ENV_ENABLE_AUTH),
            api_key=_getenv(ENV_API_KEY),
            poll_interval=_getenv_float(ENV_POLL_INTERVAL, 2.0),
            grace_delay=_getenv_float(ENV_GRACE_DELAY, 2.0),
            http_timeout=_getenv_float(ENV_HTTP_TIMEOUT, 30.0),
            session_path=_getenv(ENV_SESSION_PATH, DEFAULT_SESSION_PATH) or DEFAULT_SESSION_PATH,
            session_fernet_key=_getenv(ENV_SESSION_FERNET_KEY),
            session_bucket=bucket,
            session_key=key if bucket else None,
        )


__all__ = ["ClientConfig"]
