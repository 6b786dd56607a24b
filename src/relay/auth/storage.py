"""Credential persistence adapters.

Storages expose ``get_item``/``set_item``/``remove_item``; custom ones may
implement any of them as coroutines.
"""

from __future__ import annotations

import time
from typing import Awaitable, Protocol, Union
from urllib.parse import quote, unquote

from requests.cookies import RequestsCookieJar, create_cookie, remove_cookie_by_name

from ..networking.interceptors import resolve
from .config import AuthConfig, CookieOptions


class TokenStorage(Protocol):
    def get_item(self, key: str) -> Union[str, None, Awaitable[str | None]]: ...

    def set_item(self, key: str, value: str) -> Union[None, Awaitable[None]]: ...

    def remove_item(self, key: str) -> Union[None, Awaitable[None]]: ...


class MemoryStorage:
    """Process-local storage; credentials vanish with the client."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class CookieStorage:
    """Keeps credentials as cookies in a ``requests`` cookie jar.

    Pass the transport session's jar to have the cookies sent along with
    requests that match ``options.domain`` and ``options.path``.
    """

    def __init__(
        self,
        jar: RequestsCookieJar | None = None,
        options: CookieOptions | None = None,
    ) -> None:
        self._jar = jar if jar is not None else RequestsCookieJar()
        self._options = options or CookieOptions()

    @property
    def jar(self) -> RequestsCookieJar:
        return self._jar

    def get_item(self, key: str) -> str | None:
        value = self._jar.get(key)
        return unquote(value) if value else None

    def set_item(self, key: str, value: str) -> None:
        options = self._options
        expires = (
            int(time.time()) + options.max_age_seconds
            if options.max_age_seconds is not None
            else None
        )
        rest: dict[str, str | None] = {"SameSite": options.same_site}
        if options.http_only:
            rest["HttpOnly"] = None
        remove_cookie_by_name(self._jar, key)
        self._jar.set_cookie(
            create_cookie(
                key,
                quote(value, safe=""),
                domain=options.domain,
                path=options.path,
                secure=options.secure,
                expires=expires,
                rest=rest,
            )
        )

    def remove_item(self, key: str) -> None:
        remove_cookie_by_name(self._jar, key)


def resolve_storage(
    config: AuthConfig, *, cookie_jar: RequestsCookieJar | None = None
) -> TokenStorage:
    """Build the storage adapter selected by ``config.storage``."""
    if config.storage == "memory":
        return MemoryStorage()
    if config.storage == "cookie":
        return CookieStorage(cookie_jar, config.cookie_options)
    if config.storage == "custom":
        if config.custom_storage is None:
            raise ValueError("custom_storage is required when storage='custom'")
        return config.custom_storage
    raise ValueError(f"Unsupported storage strategy: {config.storage}")


async def read_item(storage: TokenStorage, key: str) -> str | None:
    return await resolve(storage.get_item(key))


async def write_item(storage: TokenStorage, key: str, value: str) -> None:
    await resolve(storage.set_item(key, value))


async def delete_item(storage: TokenStorage, key: str) -> None:
    await resolve(storage.remove_item(key))
