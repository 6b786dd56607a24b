"""Configuration models for the HttpClient interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Mapping

from ..auth.config import AuthConfig
from .errors import HttpClientError
from .retry import RetryPolicy

SSLErrorTransformer = Callable[[HttpClientError], HttpClientError]


def _default_headers() -> Mapping[str, str]:
    """Return immutable empty default headers mapping."""

    return MappingProxyType({})


@dataclass(frozen=True)
class SSLErrorConfig:
    """How TLS certificate failures are reported to callers."""

    enabled: bool = True
    include_technical_details: bool = False
    include_suggestions: bool = True
    custom_transformer: SSLErrorTransformer | None = None
    development: bool = False


@dataclass(frozen=True)
class HttpClientConfig:
    """Configuration for HttpClient behavior.

    ``retries`` and the ``retry_*`` fields describe the default retry policy;
    ``retry_policy`` replaces them wholesale when given.
    """

    base_url: str = ""
    user_agent: str | None = None
    default_headers: Mapping[str, str] = field(default_factory=_default_headers)
    timeout_seconds: float = 10.0
    retries: int = 0
    retry_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = 30.0
    backoff_factor: float = 2.0
    retry_jitter: bool = True
    retry_policy: RetryPolicy | None = None
    verify_tls: bool | str = True
    interceptors_enabled: bool = True
    debug: bool = False
    auth: AuthConfig | None = None
    ssl_errors: SSLErrorConfig = field(default_factory=SSLErrorConfig)

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0")
        if self.max_retry_delay_seconds < 0:
            raise ValueError("max_retry_delay_seconds must be >= 0")
        if self.backoff_factor <= 1:
            raise ValueError("backoff_factor must be > 1")

        # Freeze copied headers to avoid post-init mutation side effects.
        object.__setattr__(
            self,
            "default_headers",
            MappingProxyType(dict(self.default_headers)),
        )

    def build_retry_policy(self) -> RetryPolicy:
        """Return the retry policy this configuration describes."""
        if self.retry_policy is not None:
            return self.retry_policy
        return RetryPolicy(
            max_retries=self.retries,
            base_delay_seconds=self.retry_delay_seconds,
            max_delay_seconds=self.max_retry_delay_seconds,
            backoff_factor=self.backoff_factor,
            jitter=self.retry_jitter,
        )
