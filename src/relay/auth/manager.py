"""Credential coordinator: storage, expiry, and single-flight refresh."""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable

from ..networking.errors import AuthenticationError, HttpClientError
from ..networking.interceptors import RequestInterceptor
from ..networking.types import RequestSpec
from ..observability import get_logger
from .config import AuthConfig
from .events import AuthEvents
from .storage import (
    MemoryStorage,
    TokenStorage,
    delete_item,
    read_item,
    resolve_storage,
    write_item,
)
from .tokens import DEFAULT_TOKEN_TYPE, AuthState, Credentials, extract_credentials

RefreshFn = Callable[[str, dict[str, Any]], Awaitable[Any]]

DEFAULT_REFRESH_THRESHOLD_SECONDS = 300.0


class AuthManager:
    """Owns the session credentials for one client.

    At most one refresh runs at a time: callers asking for a refresh while one
    is in flight share its outcome. ``refresh_fn`` receives the refresh URL
    and the JSON payload to post and returns the decoded response body.
    """

    def __init__(
        self,
        config: AuthConfig | None = None,
        *,
        storage: TokenStorage | None = None,
        debug: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        if storage is not None:
            self._storage = storage
        elif config is not None:
            self._storage = resolve_storage(config)
        else:
            self._storage = MemoryStorage()
        self._clock = clock
        self._credentials: Credentials | None = None
        self._user: Any = None
        self._last_refresh: float | None = None
        self._refresh_task: asyncio.Future[Credentials] | None = None
        self._initialized = False
        self._log = get_logger("auth", debug=debug)
        self.events = AuthEvents(debug=debug)
        if config is not None:
            self._register_config_callbacks(config)

    def _register_config_callbacks(self, config: AuthConfig) -> None:
        if config.on_login_success is not None:
            self.events.on("login", config.on_login_success)
        if config.on_logout is not None:
            self.events.on("logout", config.on_logout)
        if config.on_token_refresh is not None:
            self.events.on("token_refresh", config.on_token_refresh)
        if config.on_token_expired is not None:
            self.events.on("token_expired", config.on_token_expired)
        if config.on_auth_error is not None:
            self.events.on("auth_error", config.on_auth_error)

    @property
    def config(self) -> AuthConfig | None:
        return self._config

    @property
    def storage(self) -> TokenStorage:
        return self._storage

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    @property
    def user(self) -> Any:
        return self._user

    def set_user(self, user: Any) -> None:
        self._user = user

    @property
    def state(self) -> AuthState:
        return AuthState(
            is_authenticated=self.is_authenticated(),
            credentials=self._credentials,
            is_refreshing=self.is_refreshing,
            last_refresh=self._last_refresh,
            user=self._user,
        )

    def _keys(self) -> tuple[str, str, str, str]:
        config = self._config or AuthConfig()
        token_key = config.token_key
        return (
            token_key,
            config.refresh_token_key,
            f"{token_key}_expiresAt",
            f"{token_key}_tokenType",
        )

    async def initialize(self) -> None:
        """Load persisted credentials once; later calls do nothing."""
        if self._initialized:
            return
        self._initialized = True
        if self._config is None:
            return

        token_key, refresh_key, expires_key, type_key = self._keys()
        access_token = await read_item(self._storage, token_key)
        if not access_token:
            self._log.debug("auth_initialized", restored=False)
            return

        refresh_token = await read_item(self._storage, refresh_key)
        raw_expiry = await read_item(self._storage, expires_key)
        token_type = await read_item(self._storage, type_key)
        expires_at: float | None = None
        if raw_expiry:
            try:
                expires_at = float(raw_expiry)
            except ValueError:
                self._log.warning("stored_expiry_invalid", value=raw_expiry)
        self._credentials = Credentials(
            access_token=access_token,
            refresh_token=refresh_token or None,
            expires_at=expires_at,
            token_type=token_type or None,
        )
        self._log.debug("auth_initialized", restored=True)

    async def set_tokens(self, credentials: Credentials) -> Credentials:
        """Store ``credentials``, resolving a relative expiry to an absolute one."""
        stored = credentials.with_expiry(self._clock())
        self._credentials = stored

        token_key, refresh_key, expires_key, type_key = self._keys()
        await write_item(self._storage, token_key, stored.access_token)
        optional = (
            (refresh_key, stored.refresh_token or None),
            (expires_key, None if stored.expires_at is None else repr(stored.expires_at)),
            (type_key, stored.token_type or None),
        )
        for key, value in optional:
            # absent fields must not leave values from earlier credentials
            if value is None:
                await delete_item(self._storage, key)
            else:
                await write_item(self._storage, key, value)
        self._log.debug("tokens_set", expires_at=stored.expires_at)
        return stored

    def get_tokens(self) -> Credentials | None:
        return self._credentials

    async def clear_tokens(self) -> None:
        self._credentials = None
        self._user = None
        for key in self._keys():
            await delete_item(self._storage, key)
        self._log.debug("tokens_cleared")

    def is_authenticated(self) -> bool:
        return self._credentials is not None

    def is_token_expired(self, threshold_seconds: float | None = None) -> bool:
        """True when the token expires within ``threshold_seconds`` from now.

        Credentials without an expiry never expire. ``None`` uses the
        configured refresh threshold.
        """
        credentials = self._credentials
        if credentials is None or credentials.expires_at is None:
            return False
        if threshold_seconds is None:
            threshold_seconds = (
                self._config.refresh_threshold_seconds
                if self._config is not None
                else DEFAULT_REFRESH_THRESHOLD_SECONDS
            )
        return self._clock() + threshold_seconds >= credentials.expires_at

    def needs_proactive_refresh(self) -> bool:
        config = self._config
        credentials = self._credentials
        return bool(
            config is not None
            and config.auto_refresh
            and config.token_refresh_url
            and credentials is not None
            and credentials.refresh_token
            and not self.is_refreshing
            and self.is_token_expired()
        )

    def extract_tokens(self, data: Any) -> Credentials | None:
        if self._config is not None and self._config.extract_tokens is not None:
            return self._config.extract_tokens(data)
        return extract_credentials(data)

    async def refresh_tokens(self, refresh_fn: RefreshFn) -> Credentials:
        """Refresh the credentials, joining a refresh already in flight.

        Raises:
            AuthenticationError: No refresh endpoint or refresh token, or the
                response carried no credentials.
            HttpClientError: The refresh request itself failed.
        """
        if self._config is None or not self._config.token_refresh_url:
            raise AuthenticationError("Token refresh URL not configured")

        if self._refresh_task is None or self._refresh_task.done():
            task = asyncio.ensure_future(self._perform_refresh(refresh_fn))
            task.add_done_callback(self._refresh_finished)
            self._refresh_task = task
            self._log.debug("token_refresh_started")
        else:
            self._log.debug("token_refresh_joined")
        return await asyncio.shield(self._refresh_task)

    async def cancel_refresh(self) -> None:
        """Cancel a refresh in flight and wait for it to unwind."""
        task = self._refresh_task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _refresh_finished(self, task: asyncio.Future[Credentials]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            task.exception()

    async def _perform_refresh(self, refresh_fn: RefreshFn) -> Credentials:
        assert self._config is not None and self._config.token_refresh_url
        current = self._credentials
        if current is None or not current.refresh_token:
            raise AuthenticationError("No refresh token available")

        try:
            data = await refresh_fn(
                self._config.token_refresh_url,
                {"refreshToken": current.refresh_token},
            )
            fresh = self.extract_tokens(data)
            if fresh is None:
                raise AuthenticationError(
                    "Failed to extract tokens from refresh response"
                )
            if fresh.refresh_token is None:
                fresh = replace(fresh, refresh_token=current.refresh_token)
            stored = await self.set_tokens(fresh)
        except Exception as exc:
            self._log.debug("token_refresh_failed", failure=repr(exc))
            await self.clear_tokens()
            await self.events.emit("token_expired")
            if isinstance(exc, HttpClientError):
                raise
            raise AuthenticationError(
                f"Token refresh failed: {exc}", cause=exc
            ) from exc

        self._last_refresh = self._clock()
        self._log.debug("token_refresh_succeeded", expires_at=stored.expires_at)
        await self.events.emit("token_refresh", stored)
        return stored

    async def handle_unauthorized(self, refresh_fn: RefreshFn) -> bool:
        """React to a 401 and report whether fresh credentials are available.

        A refresh already in flight is awaited. Otherwise one refresh is tried
        when a refresh token and endpoint exist; without them the session is
        cleared and ``token_expired`` fires without any network call.
        """
        if self._config is None:
            return False

        credentials = self._credentials
        can_refresh = bool(
            self._config.token_refresh_url
            and credentials is not None
            and credentials.refresh_token
        )
        if self.is_refreshing or can_refresh:
            try:
                await self.refresh_tokens(refresh_fn)
            except HttpClientError as exc:
                self._log.debug("unauthorized_refresh_failed", failure=exc.message)
                return False
            return True

        self._log.debug("unauthorized_without_refresh")
        await self.clear_tokens()
        await self.events.emit("token_expired")
        return False

    async def process_login_response(self, data: Any) -> Credentials | None:
        credentials = self.extract_tokens(data)
        if credentials is None:
            return None
        stored = await self.set_tokens(credentials)
        await self.events.emit("login", stored)
        return stored

    async def handle_login_error(self, error: HttpClientError) -> None:
        await self.events.emit("auth_error", error)

    async def handle_logout(self) -> None:
        await self.clear_tokens()
        await self.events.emit("logout")

    def create_auth_interceptor(self) -> RequestInterceptor:
        """Request interceptor writing ``Authorization: <prefix> <token>``.

        Requests pass through untouched while no credentials are held.
        """

        def interceptor(spec: RequestSpec) -> RequestSpec:
            credentials = self._credentials
            if credentials is None:
                return spec
            prefix = (
                (self._config.token_prefix if self._config is not None else None)
                or credentials.token_type
                or DEFAULT_TOKEN_TYPE
            )
            spec.headers["Authorization"] = f"{prefix} {credentials.access_token}"
            return spec

        return interceptor
