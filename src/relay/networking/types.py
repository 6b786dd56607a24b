"""Value types exchanged between the client, interceptors, and callers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Generic, Literal, TypeVar, Union

from requests.structures import CaseInsensitiveDict

if TYPE_CHECKING:
    from .cancellation import CancelToken
    from .retry import RetryPolicy

T = TypeVar("T")
E = TypeVar("E", bound=BaseException)

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome plus request metadata."""

    value: T
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> Literal[True]:
        return True

    @property
    def error(self) -> None:
        return None

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed outcome plus request metadata."""

    error: E
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> Literal[False]:
        return False

    @property
    def value(self) -> None:
        return None

    def unwrap(self) -> Any:
        raise self.error


Result = Union[Ok[T], Err[E]]


@dataclass
class RequestSpec:
    """One outgoing request as seen by request interceptors.

    Interceptors may mutate the spec in place and must return it (or a
    replacement). Header keys are case-insensitive; the last write for a key
    wins and insertion order is preserved.
    """

    method: str
    url: str
    headers: CaseInsensitiveDict[str] = field(default_factory=CaseInsensitiveDict)
    params: Any = None
    body: Any = None
    json: Any = None
    timeout: float | None = None
    cancel_token: CancelToken | None = None
    retry: RetryPolicy | None = None
    allow_redirects: bool = True
    on_upload_progress: ProgressCallback | None = None
    skip_auth_refresh: bool = False
    annotations: dict[str, Any] = field(default_factory=dict)

    def copy(self) -> RequestSpec:
        return replace(
            self,
            headers=CaseInsensitiveDict(self.headers),
            annotations=dict(self.annotations),
        )


@dataclass
class ResponseEnvelope:
    """A completed response with its body already decoded."""

    status_code: int
    status_text: str
    headers: CaseInsensitiveDict[str]
    data: Any
    url: str
    elapsed_s: float | None = None
    request: RequestSpec | None = field(default=None, repr=False)
    annotations: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def copy(self) -> ResponseEnvelope:
        return replace(
            self,
            headers=CaseInsensitiveDict(self.headers),
            annotations=dict(self.annotations),
        )
