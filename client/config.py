"""
client/config.py: Settings for the session client.

Same resolution rules as backend/config.py: root .env first, then
client/.env, then process environment. Timeouts are in seconds.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_CLIENT_DIR = Path(__file__).resolve().parent
_PROJECT_ROOT = _CLIENT_DIR.parent

load_dotenv(_PROJECT_ROOT / ".env")
load_dotenv(_CLIENT_DIR / ".env")


def _first_non_empty_env(*names: str, default: str) -> str:
    """Returns the first non-empty env var value from `names`, else `default`."""
    for name in names:
        value = os.getenv(name)
        if value is not None and value != "":
            return value
    return default


def _parse_float_env(*names: str, default: float) -> float:
    raw = _first_non_empty_env(*names, default=str(default))
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class ClientSettings:
    base_url: str = "http://localhost:5000/api/v1"
    # Applies to every REST call made through the shared httpx client.
    request_timeout: float = 15.0
    # Upper bound on one POST /auth/refresh; exceeding it is a transient failure.
    refresh_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(
            base_url=_first_non_empty_env(
                "SESSION_API_BASE_URL",
                default=cls.base_url,
            ).rstrip("/"),
            request_timeout=_parse_float_env(
                "SESSION_REQUEST_TIMEOUT",
                default=cls.request_timeout,
            ),
            refresh_timeout=_parse_float_env(
                "SESSION_REFRESH_TIMEOUT",
                default=cls.refresh_timeout,
            ),
        )
