"""Cooperative cancellation for in-flight calls and retry pauses."""

from __future__ import annotations

import asyncio

from .errors import RequestCancelledError, RequestTimeoutError


class CancelToken:
    """One-shot cancellation signal shared by a call and its transport.

    A token is either triggered explicitly by its owner (``cancel``) or armed
    to fire after a delay (``cancel_after``), which marks the cancellation as a
    timeout. Once cancelled it stays cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._timed_out = False
        self._timer: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Request cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        self.disarm()

    def cancel_after(self, seconds: float, reason: str | None = None) -> None:
        """Arm the token to fire as a timeout after ``seconds``."""
        self.disarm()
        loop = asyncio.get_running_loop()
        message = reason or f"Request timeout after {seconds:g}s"
        self._timer = loop.call_later(seconds, self._expire, message)

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self, reason: str) -> None:
        self._timer = None
        if not self._event.is_set():
            self._timed_out = True
            self.cancel(reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless the token fires first.

        Raises:
            RequestCancelledError: The token fired before the delay elapsed.
        """
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise self.error()

    def error(self) -> RequestCancelledError:
        reason = self._reason or "Request cancelled"
        if self._timed_out:
            return RequestTimeoutError(reason)
        return RequestCancelledError(reason)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.error()
