"""Retry policy engine: retry decisions and exponential backoff."""

from __future__ import annotations

import asyncio
import math
import random
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, TypeVar

from ..observability import get_logger
from .cancellation import CancelToken
from .errors import HttpClientError, RequestTimeoutError

T = TypeVar("T")

RetryCondition = Callable[[HttpClientError, int], bool]

JITTER_RATIO = 0.1


def default_retry_condition(error: HttpClientError, attempt: int) -> bool:
    """Retry network failures and 5xx responses."""
    if isinstance(error, RequestTimeoutError):
        return False
    if error.status_code is None:
        return True
    return 500 <= error.status_code < 600


def _aggressive_condition(error: HttpClientError, attempt: int) -> bool:
    status = error.status_code
    return status is None or status >= 500 or status in (408, 429)


def _conservative_condition(error: HttpClientError, attempt: int) -> bool:
    return error.status_code in (None, 503, 504)


def _network_only_condition(error: HttpClientError, attempt: int) -> bool:
    return error.status_code is None


def _never(error: HttpClientError, attempt: int) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry a failed attempt and how long to wait.

    The delay before retry ``n`` (0-indexed) is
    ``min(base_delay_seconds * backoff_factor ** n, max_delay_seconds)``.
    """

    max_retries: int = 0
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = True
    retry_condition: RetryCondition = field(
        default=default_retry_condition, compare=False
    )

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")
        if self.backoff_factor <= 1:
            raise ValueError("backoff_factor must be > 1")

    @classmethod
    def preset(cls, scenario: str, **overrides: Any) -> RetryPolicy:
        """Build one of the named policies, optionally overriding fields.

        Scenarios: ``aggressive``, ``conservative``, ``network-only`` and
        ``custom`` (no retries until overridden).
        """
        try:
            base = _PRESETS[scenario]
        except KeyError:
            raise ValueError(f"Unknown retry scenario: {scenario}") from None
        return replace(base, **overrides)


_PRESETS: dict[str, RetryPolicy] = {
    "aggressive": RetryPolicy(
        max_retries=5,
        base_delay_seconds=0.5,
        max_delay_seconds=10.0,
        backoff_factor=1.5,
        retry_condition=_aggressive_condition,
    ),
    "conservative": RetryPolicy(
        max_retries=2,
        base_delay_seconds=2.0,
        max_delay_seconds=30.0,
        backoff_factor=3.0,
        retry_condition=_conservative_condition,
    ),
    "network-only": RetryPolicy(
        max_retries=3,
        base_delay_seconds=1.0,
        max_delay_seconds=15.0,
        backoff_factor=2.0,
        retry_condition=_network_only_condition,
    ),
    "custom": RetryPolicy(retry_condition=_never),
}


class RetryManager:
    """Applies a ``RetryPolicy`` around an async operation."""

    def __init__(self, policy: RetryPolicy | None = None, *, debug: bool = False) -> None:
        self._policy = policy or RetryPolicy()
        self._log = get_logger("retry", debug=debug)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def update(self, **changes: Any) -> RetryPolicy:
        """Replace selected policy fields and return the new policy."""
        self._policy = replace(self._policy, **changes)
        self._log.debug(
            "retry_policy_updated",
            max_retries=self._policy.max_retries,
            base_delay_seconds=self._policy.base_delay_seconds,
        )
        return self._policy

    def should_retry(
        self,
        error: HttpClientError,
        attempt: int,
        policy: RetryPolicy | None = None,
    ) -> bool:
        policy = policy or self._policy
        if attempt >= policy.max_retries:
            return False
        return bool(policy.retry_condition(error, attempt))

    def calculate_delay(self, attempt: int, policy: RetryPolicy | None = None) -> float:
        """Return the pause in seconds before retrying after ``attempt``."""
        policy = policy or self._policy
        base, ceiling = policy.base_delay_seconds, policy.max_delay_seconds
        if base == 0 or ceiling == 0:
            delay = 0.0
        elif attempt * math.log(policy.backoff_factor) >= math.log(ceiling / base):
            # clamped before the power is taken so it cannot overflow
            delay = ceiling
        else:
            delay = base * (policy.backoff_factor**attempt)
        if policy.jitter:
            delay += delay * random.uniform(-JITTER_RATIO, JITTER_RATIO)
        return max(0.0, min(delay, policy.max_delay_seconds))

    async def _pause(self, seconds: float, cancel_token: CancelToken | None) -> None:
        if cancel_token is None:
            await asyncio.sleep(seconds)
            return
        await cancel_token.sleep(seconds)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        policy: RetryPolicy | None = None,
        cancel_token: CancelToken | None = None,
        context: str = "request",
    ) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        The first attempt is always made. Only ``HttpClientError`` failures are
        considered for retry; terminal errors (cancellation, interceptor
        failures) stop the loop immediately. Cancelling ``cancel_token`` while
        pausing between attempts aborts the loop with a cancellation error.

        Raises:
            HttpClientError: The last failure once retries are exhausted.
        """
        policy = policy or self._policy
        started = time.perf_counter()
        last_error: HttpClientError | None = None

        for attempt in range(policy.max_retries + 1):
            try:
                result = await operation()
            except HttpClientError as exc:
                last_error = exc
                if exc.terminal or not self.should_retry(exc, attempt, policy):
                    self._log.debug(
                        "retry_exhausted",
                        context=context,
                        attempt=attempt + 1,
                        error=exc.message,
                        status_code=exc.status_code,
                    )
                    break
                delay = self.calculate_delay(attempt, policy)
                self._log.debug(
                    "retry_scheduled",
                    context=context,
                    attempt=attempt + 1,
                    delay_s=round(delay, 3),
                    error=exc.message,
                    status_code=exc.status_code,
                )
                await self._pause(delay, cancel_token)
                continue

            if attempt > 0:
                self._log.debug(
                    "retry_succeeded",
                    context=context,
                    retries=attempt,
                    duration_s=round(time.perf_counter() - started, 3),
                )
            return result

        assert last_error is not None
        raise last_error
