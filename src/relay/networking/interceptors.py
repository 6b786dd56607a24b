"""Interceptor pipeline for requests, responses, and errors.

Interceptors are plain callables, sync or async. Request and response
interceptors return the (possibly replaced) object they were given; a failure
aborts the chain. Error interceptors are best-effort: a failing one is skipped
and the chain continues with the error as it stood before it ran.
"""

from __future__ import annotations

import inspect
import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    Literal,
    TypeVar,
    Union,
)

from ..observability import get_logger, redact_headers, redact_url_credentials
from .errors import HttpClientError
from .types import RequestSpec, ResponseEnvelope

F = TypeVar("F")
V = TypeVar("V")

RequestInterceptor = Callable[
    [RequestSpec], Union[RequestSpec, Awaitable[RequestSpec]]
]
ResponseInterceptor = Callable[
    [ResponseEnvelope], Union[ResponseEnvelope, Awaitable[ResponseEnvelope]]
]
ErrorInterceptor = Callable[
    [HttpClientError], Union[HttpClientError, Awaitable[HttpClientError]]
]
InterceptorKind = Literal["request", "response", "error"]


async def resolve(value: Union[V, Awaitable[V]]) -> V:
    """Await ``value`` if a hook returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


class _Entry(Generic[F]):
    __slots__ = ("hook",)

    def __init__(self, hook: F) -> None:
        self.hook = hook


class HookHandle:
    """Removes one registration; calling it again is a no-op."""

    def __init__(self, registry: HookRegistry[Any], entry: _Entry[Any]) -> None:
        self._registry = registry
        self._entry: _Entry[Any] | None = entry

    @property
    def active(self) -> bool:
        return self._entry is not None

    def __call__(self) -> bool:
        entry, self._entry = self._entry, None
        if entry is None:
            return False
        return self._registry._discard(entry)


class HookRegistry(Generic[F]):
    """Ordered list of callbacks with identity-based removal.

    Each registration is tracked separately, so registering the same callable
    twice yields two entries and two independent handles.
    """

    def __init__(self) -> None:
        self._entries: list[_Entry[F]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, hook: F) -> HookHandle:
        entry = _Entry(hook)
        self._entries.append(entry)
        return HookHandle(self, entry)

    def remove(self, hook: F) -> bool:
        """Remove the earliest registration of ``hook`` (matched by identity)."""
        for index, entry in enumerate(self._entries):
            if entry.hook is hook:
                del self._entries[index]
                return True
        return False

    def clear(self) -> None:
        self._entries = []

    def snapshot(self) -> tuple[F, ...]:
        return tuple(entry.hook for entry in self._entries)

    def _discard(self, entry: _Entry[F]) -> bool:
        for index, candidate in enumerate(self._entries):
            if candidate is entry:
                del self._entries[index]
                return True
        return False


class InterceptorManager:
    """Holds the three interceptor chains and applies them in order."""

    def __init__(self, enabled: bool = True, *, debug: bool = False) -> None:
        self._request: HookRegistry[RequestInterceptor] = HookRegistry()
        self._response: HookRegistry[ResponseInterceptor] = HookRegistry()
        self._error: HookRegistry[ErrorInterceptor] = HookRegistry()
        self._enabled = enabled
        self._log = get_logger("interceptors", debug=debug)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        self._log.debug("interceptors_toggled", enabled=enabled)

    def _registry(self, kind: InterceptorKind) -> HookRegistry[Any]:
        if kind == "request":
            return self._request
        if kind == "response":
            return self._response
        if kind == "error":
            return self._error
        raise ValueError(f"Unknown interceptor kind: {kind}")

    def _add(self, kind: InterceptorKind, interceptor: Any) -> HookHandle:
        handle = self._registry(kind).add(interceptor)
        self._log.debug("interceptor_added", kind=kind)
        return handle

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> HookHandle:
        return self._add("request", interceptor)

    def add_response_interceptor(
        self, interceptor: ResponseInterceptor
    ) -> HookHandle:
        return self._add("response", interceptor)

    def add_error_interceptor(self, interceptor: ErrorInterceptor) -> HookHandle:
        return self._add("error", interceptor)

    def remove_request_interceptor(self, interceptor: RequestInterceptor) -> bool:
        return self._request.remove(interceptor)

    def remove_response_interceptor(self, interceptor: ResponseInterceptor) -> bool:
        return self._response.remove(interceptor)

    def remove_error_interceptor(self, interceptor: ErrorInterceptor) -> bool:
        return self._error.remove(interceptor)

    def clear(self, kind: InterceptorKind | None = None) -> None:
        """Drop every interceptor, or only those of one kind."""
        kinds: tuple[InterceptorKind, ...] = (
            (kind,) if kind is not None else ("request", "response", "error")
        )
        for name in kinds:
            self._registry(name).clear()
        self._log.debug("interceptors_cleared", kinds=list(kinds))

    def counts(self) -> dict[str, int]:
        return {
            "request": len(self._request),
            "response": len(self._response),
            "error": len(self._error),
        }

    async def apply_request_interceptors(self, spec: RequestSpec) -> RequestSpec:
        chain = self._request.snapshot()
        if not self._enabled or not chain:
            return spec
        current = spec.copy()
        for interceptor in chain:
            result = await resolve(interceptor(current))
            if not isinstance(result, RequestSpec):
                raise TypeError(
                    "request interceptor must return a RequestSpec, "
                    f"got {type(result).__name__}"
                )
            current = result
        return current

    async def apply_response_interceptors(
        self, envelope: ResponseEnvelope
    ) -> ResponseEnvelope:
        chain = self._response.snapshot()
        if not self._enabled or not chain:
            return envelope
        current = envelope.copy()
        for interceptor in chain:
            result = await resolve(interceptor(current))
            if not isinstance(result, ResponseEnvelope):
                raise TypeError(
                    "response interceptor must return a ResponseEnvelope, "
                    f"got {type(result).__name__}"
                )
            current = result
        return current

    async def apply_error_interceptors(self, error: HttpClientError) -> HttpClientError:
        chain = self._error.snapshot()
        if not self._enabled or not chain:
            return error
        current = error
        for interceptor in chain:
            candidate = current.copy()
            try:
                result = await resolve(interceptor(candidate))
            except Exception as exc:  # noqa: BLE001
                self._log.debug(
                    "error_interceptor_failed",
                    interceptor=getattr(interceptor, "__name__", repr(interceptor)),
                    failure=repr(exc),
                )
                continue
            if not isinstance(result, HttpClientError):
                self._log.debug(
                    "error_interceptor_invalid_result",
                    result_type=type(result).__name__,
                )
                continue
            current = result
        return current


def bearer_token_interceptor(
    get_token: Callable[[], Union[str, None, Awaitable[str | None]]],
    *,
    prefix: str = "Bearer",
) -> RequestInterceptor:
    """Inject ``Authorization: <prefix> <token>`` from a (possibly async) getter."""

    async def interceptor(spec: RequestSpec) -> RequestSpec:
        token = await resolve(get_token())
        if token:
            spec.headers["Authorization"] = f"{prefix} {token}"
        return spec

    return interceptor


def logging_interceptor(
    logger: Any | None = None, *, enabled: bool = True
) -> RequestInterceptor:
    """Log each outgoing request with sensitive headers redacted."""
    log = logger or get_logger("outgoing", debug=True)

    def interceptor(spec: RequestSpec) -> RequestSpec:
        if enabled:
            log.info(
                "outgoing_request",
                method=spec.method,
                url=redact_url_credentials(spec.url),
                headers=redact_headers(spec.headers),
            )
        return spec

    return interceptor


def timing_interceptors() -> tuple[RequestInterceptor, ResponseInterceptor]:
    """Return a request/response pair that records ``duration_s`` on responses."""

    def on_request(spec: RequestSpec) -> RequestSpec:
        spec.annotations["started_at"] = time.perf_counter()
        return spec

    def on_response(envelope: ResponseEnvelope) -> ResponseEnvelope:
        request = envelope.request
        started = request.annotations.get("started_at") if request else None
        if started is not None:
            envelope.annotations["duration_s"] = time.perf_counter() - started
        return envelope

    return on_request, on_response


def unauthorized_interceptor(
    handler: Callable[[HttpClientError], Union[None, Awaitable[None]]],
) -> ErrorInterceptor:
    """Call ``handler`` for failures that carry a 401 status.

    Non-2xx responses reach callers as errors, so this hooks the error chain.
    """

    async def interceptor(error: HttpClientError) -> HttpClientError:
        if error.status_code == 401:
            await resolve(handler(error))
        return error

    return interceptor
