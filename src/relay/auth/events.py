"""Auth lifecycle listeners."""

from __future__ import annotations

from typing import Any, Callable, Literal

from ..networking.interceptors import HookHandle, HookRegistry, resolve
from ..observability import get_logger

AuthEvent = Literal["login", "logout", "token_refresh", "token_expired", "auth_error"]
AUTH_EVENTS: tuple[AuthEvent, ...] = (
    "login",
    "logout",
    "token_refresh",
    "token_expired",
    "auth_error",
)

Listener = Callable[..., Any]


class AuthEvents:
    """Per-event listener lists with the same add/remove contract as interceptors.

    Listeners run in registration order and are awaited when they return an
    awaitable. A failing listener is logged and the remaining ones still run.
    """

    def __init__(self, *, debug: bool = False) -> None:
        self._listeners: dict[str, HookRegistry[Listener]] = {
            event: HookRegistry() for event in AUTH_EVENTS
        }
        self._log = get_logger("auth_events", debug=debug)

    def _registry(self, event: str) -> HookRegistry[Listener]:
        try:
            return self._listeners[event]
        except KeyError:
            raise ValueError(f"Unknown auth event: {event}") from None

    def on(self, event: AuthEvent, listener: Listener) -> HookHandle:
        return self._registry(event).add(listener)

    def off(self, event: AuthEvent, listener: Listener) -> bool:
        return self._registry(event).remove(listener)

    def remove_all(self, event: AuthEvent | None = None) -> None:
        events = (event,) if event is not None else AUTH_EVENTS
        for name in events:
            self._registry(name).clear()

    def count(self, event: AuthEvent) -> int:
        return len(self._registry(event))

    async def emit(self, event: AuthEvent, *args: Any) -> None:
        for listener in self._registry(event).snapshot():
            try:
                await resolve(listener(*args))
            except Exception as exc:  # noqa: BLE001
                self._log.warning(
                    "auth_listener_failed",
                    auth_event=event,
                    listener=getattr(listener, "__name__", repr(listener)),
                    failure=repr(exc),
                )
