"""Configuration models for credential handling."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Union

if TYPE_CHECKING:
    from ..networking.errors import HttpClientError
    from .storage import TokenStorage
    from .tokens import Credentials

StorageStrategy = Literal["memory", "cookie", "custom"]
SameSite = Literal["Strict", "Lax", "None"]

MaybeAwaitable = Union[None, Awaitable[None]]
CredentialsCallback = Callable[["Credentials"], MaybeAwaitable]
NotifyCallback = Callable[[], MaybeAwaitable]
AuthErrorCallback = Callable[["HttpClientError"], MaybeAwaitable]
TokenExtractor = Callable[[Any], Union["Credentials", None]]

_STORAGE_STRATEGIES = ("memory", "cookie", "custom")


@dataclass(frozen=True)
class CookieOptions:
    """Attributes stamped on cookies written by the cookie storage."""

    domain: str = ""
    path: str = "/"
    secure: bool = True
    http_only: bool = False
    same_site: SameSite = "Lax"
    max_age_seconds: int | None = 7 * 24 * 60 * 60

    def __post_init__(self) -> None:
        if self.max_age_seconds is not None and self.max_age_seconds < 0:
            raise ValueError("max_age_seconds must be >= 0 when provided")


@dataclass(frozen=True)
class AuthConfig:
    """Where credentials live, which endpoints manage them, and who to notify.

    ``token_prefix`` overrides the scheme written before the access token;
    when unset the stored token type is used, falling back to ``Bearer``.
    """

    token_key: str = "authToken"
    refresh_token_key: str = "refreshToken"
    storage: StorageStrategy = "memory"
    custom_storage: TokenStorage | None = None
    cookie_options: CookieOptions = field(default_factory=CookieOptions)
    token_refresh_url: str | None = None
    login_url: str | None = None
    logout_url: str | None = None
    token_prefix: str | None = None
    auto_refresh: bool = True
    refresh_threshold_seconds: float = 300.0
    on_token_refresh: CredentialsCallback | None = None
    on_token_expired: NotifyCallback | None = None
    on_login_success: CredentialsCallback | None = None
    on_logout: NotifyCallback | None = None
    on_auth_error: AuthErrorCallback | None = None
    extract_tokens: TokenExtractor | None = None

    def __post_init__(self) -> None:
        if self.storage not in _STORAGE_STRATEGIES:
            raise ValueError(f"Unsupported storage strategy: {self.storage}")
        if self.storage == "custom" and self.custom_storage is None:
            raise ValueError("custom_storage is required when storage='custom'")
        if self.refresh_threshold_seconds < 0:
            raise ValueError("refresh_threshold_seconds must be >= 0")
        if not self.token_key or not self.refresh_token_key:
            raise ValueError("token_key and refresh_token_key must be non-empty")
