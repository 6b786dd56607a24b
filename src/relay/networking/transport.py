"""Transport boundary and the default ``requests``-backed implementation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import requests
from requests.structures import CaseInsensitiveDict

from ..observability import get_logger
from .cancellation import CancelToken
from .errors import RequestTimeoutError, RetryableHttpError
from .types import RequestSpec
from .upload import FormData

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class TransportResponse:
    """Raw outcome of one transport call, before body decoding."""

    status_code: int
    reason: str
    headers: CaseInsensitiveDict[str] = field(default_factory=CaseInsensitiveDict)
    content: bytes = b""
    url: str = ""
    elapsed_s: float | None = None


class Transport(Protocol):
    """What the client needs from the layer that actually talks HTTP.

    ``send`` must give up promptly once ``cancel_token`` fires and raise the
    token's error. Network failures are raised as ``HttpClientError`` kinds.
    """

    async def send(
        self, spec: RequestSpec, cancel_token: CancelToken
    ) -> TransportResponse: ...

    async def close(self) -> None: ...


class _ProgressReader:
    """File-like view over ``payload`` that reports bytes handed to the socket."""

    def __init__(self, payload: bytes, report: Callable[[int, int], None]) -> None:
        self._payload = payload
        self._report = report
        self._position = 0

    def __len__(self) -> int:
        return len(self._payload)

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = len(self._payload) - self._position
        size = min(size, CHUNK_SIZE)
        chunk = self._payload[self._position : self._position + size]
        self._position += len(chunk)
        if chunk:
            self._report(self._position, len(self._payload))
        return chunk


def _discard_outcome(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


class RequestsTransport:
    """Runs ``requests.Session.request`` in a worker thread.

    The blocking call races the cancellation token: when the token fires first
    the caller is released with the token's error and whatever the worker
    eventually produces is dropped.
    """

    def __init__(
        self,
        *,
        verify_tls: bool = True,
        session: requests.Session | None = None,
        debug: bool = False,
    ) -> None:
        self._session = session or requests.Session()
        self._verify_tls = verify_tls
        self._log = get_logger("transport", debug=debug)

    @property
    def session(self) -> requests.Session:
        return self._session

    async def send(
        self, spec: RequestSpec, cancel_token: CancelToken
    ) -> TransportResponse:
        cancel_token.raise_if_cancelled()
        loop = asyncio.get_running_loop()

        headers: CaseInsensitiveDict[str] = CaseInsensitiveDict(spec.headers)
        body = spec.body
        if isinstance(body, FormData):
            body, content_type = body.encode()
            headers["Content-Type"] = content_type
        if spec.on_upload_progress is not None and isinstance(body, (bytes, bytearray)):
            callback = spec.on_upload_progress

            def report(loaded: int, total: int) -> None:
                loop.call_soon_threadsafe(callback, loaded, total)

            body = _ProgressReader(bytes(body), report)

        worker = asyncio.ensure_future(
            asyncio.to_thread(self._send_sync, spec, headers, body)
        )
        cancelled = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {worker, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()

        if worker in done:
            return worker.result()

        worker.add_done_callback(_discard_outcome)
        self._log.debug(
            "transport_abandoned",
            method=spec.method,
            reason=cancel_token.reason,
        )
        raise cancel_token.error()

    def _send_sync(
        self, spec: RequestSpec, headers: CaseInsensitiveDict[str], body: Any
    ) -> TransportResponse:
        try:
            response = self._session.request(
                spec.method,
                spec.url,
                headers=dict(headers),
                params=spec.params,
                data=body,
                json=spec.json,
                timeout=spec.timeout,
                allow_redirects=spec.allow_redirects,
                verify=self._verify_tls,
            )
        except requests.exceptions.Timeout as exc:
            raise RequestTimeoutError(
                str(exc) or "Request timed out", cause=exc
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise RetryableHttpError(
                str(exc) or type(exc).__name__, cause=exc
            ) from exc

        try:
            elapsed_s: float | None = response.elapsed.total_seconds()
        except AttributeError:
            elapsed_s = None  # elapsed is missing on some adapters
        return TransportResponse(
            status_code=response.status_code,
            reason=response.reason or "",
            headers=CaseInsensitiveDict(response.headers),
            content=response.content or b"",
            url=response.url or spec.url,
            elapsed_s=elapsed_s,
        )

    async def close(self) -> None:
        self._session.close()
