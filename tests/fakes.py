# pyright: reportUnknownParameterType=false, reportUnknownMemberType=false
# pyright: reportMissingParameterType=false
from http import HTTPStatus
from typing import Any
from unittest.mock import Mock

from requests.structures import CaseInsensitiveDict

from relay.networking.transport import TransportResponse


def transport_response(
    status: int = 200,
    body: bytes = b"",
    *,
    content_type: str = "application/json",
    reason: str | None = None,
    url: str = "http://example.com",
) -> TransportResponse:
    return TransportResponse(
        status_code=status,
        reason=reason if reason is not None else HTTPStatus(status).phrase,
        headers=CaseInsensitiveDict({"Content-Type": content_type}),
        content=body,
        url=url,
        elapsed_s=0.01,
    )


class FakeTransport:
    """Scripted transport: each send pops the next outcome.

    An outcome is a ``TransportResponse``, an exception to raise, or an async
    callable ``(spec, cancel_token)`` producing either.
    """

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.sent: list[Any] = []
        self.closed = False

    async def send(self, spec, cancel_token):
        self.sent.append(spec)
        if not self.outcomes:
            raise AssertionError(f"unexpected request {spec.method} {spec.url}")
        outcome = self.outcomes.pop(0)
        if callable(outcome) and not isinstance(outcome, Mock):
            outcome = await outcome(spec, cancel_token)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True


def mock_response(
    *,
    content: bytes = b"",
    status: int = 200,
    url: str = "http://example.com",
    reason: str = "OK",
    content_type: str = "application/json",
):
    response = Mock()
    response.content = content
    response.status_code = status
    response.url = url
    response.reason = reason
    response.elapsed.total_seconds.return_value = 0.1
    response.headers = {"Content-Type": content_type}
    return response
