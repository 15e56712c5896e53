"""Environment-driven configuration for the reservation service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from .database import resolve_database_path
from .sessions import DEFAULT_MIN_PASSWORD_LENGTH


def _parse_positive_int(name: str, raw: Optional[str]) -> Optional[int]:
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ValueError(f"{name} must be at least 1")
    return value


DEFAULT_RATE_LIMIT = "100 per 15 minutes"


def _csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _trusted_proxy_hosts(raw: Optional[str]) -> List[str] | str:
    if not raw:
        return "*"
    return _csv(raw) or "*"


def _rate_limit(raw: Optional[str]) -> Optional[str]:
    if raw is None or not raw.strip():
        return DEFAULT_RATE_LIMIT
    if raw.strip().lower() == "off":
        return None
    return raw.strip()


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from ``WORKSHOP_*`` environment variables."""

    database_path: Path
    min_password_length: int = DEFAULT_MIN_PASSWORD_LENGTH
    session_ttl: Optional[timedelta] = None
    trusted_proxies: List[str] | str = "*"
    rate_limit: Optional[str] = DEFAULT_RATE_LIMIT
    cors_origins: Tuple[str, ...] = ("*",)

    @staticmethod
    def from_env(environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        min_length = _parse_positive_int(
            "WORKSHOP_MIN_PASSWORD_LENGTH", env.get("WORKSHOP_MIN_PASSWORD_LENGTH")
        )
        ttl_minutes = _parse_positive_int(
            "WORKSHOP_SESSION_TTL_MINUTES", env.get("WORKSHOP_SESSION_TTL_MINUTES")
        )

        return Settings(
            database_path=resolve_database_path(env.get("WORKSHOP_DB_PATH")),
            min_password_length=min_length or DEFAULT_MIN_PASSWORD_LENGTH,
            session_ttl=timedelta(minutes=ttl_minutes) if ttl_minutes else None,
            trusted_proxies=_trusted_proxy_hosts(env.get("WORKSHOP_TRUSTED_PROXIES")),
            rate_limit=_rate_limit(env.get("WORKSHOP_RATE_LIMIT")),
            cors_origins=tuple(_csv(env.get("WORKSHOP_CORS_ORIGINS"))) or ("*",),
        )


__all__ = ["DEFAULT_RATE_LIMIT", "Settings"]
