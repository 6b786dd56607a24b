"""Credential values and helpers for reading them out of API responses."""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, Mapping

DEFAULT_TOKEN_TYPE = "Bearer"


@dataclass(frozen=True)
class Credentials:
    """Access token plus optional refresh token and expiry.

    ``expires_in`` is relative (seconds from issue); ``expires_at`` is an
    absolute epoch timestamp in seconds.
    """

    access_token: str
    refresh_token: str | None = None
    expires_in: float | None = None
    expires_at: float | None = None
    token_type: str | None = None

    def with_expiry(self, now: float | None = None) -> Credentials:
        """Fill ``expires_at`` from ``expires_in`` when only the latter is known."""
        if self.expires_in is None or self.expires_at is not None:
            return self
        issued = time.time() if now is None else now
        return replace(self, expires_at=issued + self.expires_in)


@dataclass(frozen=True)
class AuthState:
    """Snapshot of the coordinator's view of the session."""

    is_authenticated: bool
    credentials: Credentials | None
    is_refreshing: bool
    last_refresh: float | None = None
    user: Any = None


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def extract_credentials(data: Any) -> Credentials | None:
    """Read credentials from a login or refresh response body.

    Both camelCase and snake_case field names are recognized. Returns None
    when the body carries no access token.
    """
    if not isinstance(data, Mapping):
        return None
    access_token = _first(data, "accessToken", "access_token")
    if not access_token:
        return None
    expires_in = _first(data, "expiresIn", "expires_in")
    return Credentials(
        access_token=str(access_token),
        refresh_token=_first(data, "refreshToken", "refresh_token"),
        expires_in=float(expires_in) if expires_in is not None else None,
        token_type=_first(data, "tokenType", "token_type") or DEFAULT_TOKEN_TYPE,
    )


def validate_credentials(
    credentials: Credentials, *, now: float | None = None
) -> list[str]:
    """Return the problems found with ``credentials``; empty when valid."""
    errors: list[str] = []
    current = time.time() if now is None else now
    if not isinstance(credentials.access_token, str) or not credentials.access_token:
        errors.append("Access token is required")
    if credentials.refresh_token is not None and not isinstance(
        credentials.refresh_token, str
    ):
        errors.append("Refresh token must be a string")
    if credentials.expires_in is not None and credentials.expires_in <= 0:
        errors.append("expires_in must be a positive number")
    if credentials.expires_at is not None and credentials.expires_at <= current:
        errors.append("expires_at must be a future timestamp")
    return errors


def format_token_time_remaining(
    credentials: Credentials, *, now: float | None = None
) -> str:
    if credentials.expires_at is None:
        return "Unknown"
    current = time.time() if now is None else now
    remaining = credentials.expires_at - current
    if remaining <= 0:
        return "Expired"

    seconds = int(remaining)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"
