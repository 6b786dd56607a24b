"""Error types surfaced by the relay networking layer.

Every failed call is normalized into an ``HttpClientError``. It travels through
the error interceptor chain and is finally returned to the caller inside an
``Err`` result; ``Result.unwrap()`` raises it.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Mapping


class HttpClientError(Exception):
    """Normalized failure of one logical HTTP call."""

    #: Terminal errors are never retried, whatever the retry predicate says.
    terminal: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        status_text: str | None = None,
        cause: BaseException | None = None,
        response: Any | None = None,
        annotations: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.status_text = status_text
        self.cause = cause
        self.response = response
        self.annotations: dict[str, Any] = dict(annotations or {})
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, "
            f"status_code={self.status_code!r})"
        )

    @property
    def is_cancellation(self) -> bool:
        return isinstance(self, RequestCancelledError)

    @property
    def is_timeout(self) -> bool:
        return isinstance(self, RequestTimeoutError)

    def annotate(self, **values: Any) -> HttpClientError:
        """Attach annotations in place and return self for chaining."""
        self.annotations.update(values)
        return self

    def copy(self) -> HttpClientError:
        """Return a shallow copy with an independent annotation bag."""
        clone = type(self).__new__(type(self))
        clone.__dict__.update(self.__dict__)
        clone.args = self.args
        clone.annotations = dict(self.annotations)
        clone.__cause__ = self.__cause__
        clone.__traceback__ = self.__traceback__
        return clone


class RetryableHttpError(HttpClientError):
    """Transport or network level failure; carries no status code."""


class HttpStatusError(HttpClientError):
    """The server answered with a non-2xx status code."""


class RequestCancelledError(HttpClientError):
    """The call was cancelled through its cancellation token."""

    terminal = True


class RequestTimeoutError(RequestCancelledError):
    """The call was cancelled because its timeout elapsed."""

    terminal = False


class InterceptorError(HttpClientError):
    """A request or response interceptor failed."""

    terminal = True


class AuthenticationError(HttpClientError):
    """Credential refresh or login coordination failed."""


def format_status_message(status_code: int, reason: str | None = None) -> str:
    """Build a human-readable message for an HTTP failure status."""
    try:
        status = HTTPStatus(status_code)
    except ValueError:
        phrase = reason or "Unknown Status"
        return f"HTTP {status_code} {phrase}"
    phrase = reason or status.phrase
    if not status.description:
        return f"HTTP {status_code} {phrase}"
    return f"HTTP {status_code} {phrase}: {status.description}"
