"""Recognize TLS certificate failures and rewrite them into readable errors."""

from __future__ import annotations

import ssl
from dataclasses import dataclass
from typing import Iterator

import requests

from .config import SSLErrorConfig, SSLErrorTransformer
from .errors import HttpClientError
from .interceptors import ErrorInterceptor

SSL_ERROR_PATTERNS = (
    "certificate_verify_failed",
    "certificate verify failed",
    "certificate has expired",
    "certificate is not yet valid",
    "self-signed certificate",
    "self signed certificate",
    "unable to get local issuer certificate",
    "unable to get issuer certificate",
    "unable to verify the first certificate",
    "hostname mismatch",
    "certificate revoked",
    "bad certificate",
    "certificate unknown",
    "wrong version number",
    "tlsv1 alert",
    "sslv3 alert",
    "handshake failure",
    "handshake_failure",
    "ssl handshake",
    "tls handshake",
    "ssl_error",
    "sslerror",
)


@dataclass(frozen=True)
class SSLErrorInfo:
    kind: str
    category: str
    original_message: str
    user_message: str
    technical_details: str
    suggestions: tuple[str, ...]
    retryable: bool


def _error_chain(error: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        nested = getattr(current, "cause", None)
        if not isinstance(nested, BaseException):
            nested = current.__cause__ or current.__context__
        current = nested


def _messages(error: HttpClientError) -> list[str]:
    messages = [error.message]
    for item in _error_chain(error):
        messages.append(str(item))
        if isinstance(item, ssl.SSLError):
            messages.extend(
                str(value)
                for value in (item.reason, getattr(item, "verify_message", None))
                if value
            )
    return [message.lower() for message in messages if message]


def is_ssl_error(error: HttpClientError) -> bool:
    """True when ``error`` (or anything it wraps) is a TLS failure."""
    for item in _error_chain(error):
        if isinstance(item, (requests.exceptions.SSLError, ssl.SSLError)):
            return True
    return any(
        pattern in message for message in _messages(error) for pattern in SSL_ERROR_PATTERNS
    )


def analyze_ssl_error(error: HttpClientError) -> SSLErrorInfo:
    """Classify a TLS failure and describe it for end users."""
    messages = _messages(error)
    detail = messages[-1] if messages else ""

    def mentions(*needles: str) -> bool:
        return any(needle in message for message in messages for needle in needles)

    if mentions("certificate has expired", "cert_has_expired", "certificate expired"):
        return SSLErrorInfo(
            kind="expired",
            category="certificate",
            original_message=error.message,
            user_message="The server's SSL certificate has expired.",
            technical_details=f"Certificate expiration error: {detail}",
            suggestions=(
                "The server administrator needs to renew the SSL certificate",
                "This is a server-side issue that cannot be resolved from the client",
                "Contact the server administrator immediately",
            ),
            retryable=False,
        )
    if mentions("self-signed certificate", "self signed certificate"):
        return SSLErrorInfo(
            kind="self_signed",
            category="certificate",
            original_message=error.message,
            user_message=(
                "The server is using a self-signed certificate which cannot be verified."
            ),
            technical_details=f"Self-signed certificate error: {detail}",
            suggestions=(
                "For development: point verify_tls at the certificate bundle that signed it",
                "For production: the server should use a properly signed certificate",
                "Contact the server administrator to install a valid certificate",
            ),
            retryable=False,
        )
    if mentions(
        "unable to get local issuer certificate",
        "unable to get issuer certificate",
        "certificate unknown",
        "untrusted",
    ):
        return SSLErrorInfo(
            kind="untrusted_ca",
            category="certificate",
            original_message=error.message,
            user_message="The server's certificate authority is not trusted.",
            technical_details=f"Certificate authority error: {detail}",
            suggestions=(
                "The certificate was issued by an untrusted authority",
                "Verify the certificate chain includes all intermediate certificates",
                "Contact the server administrator to fix the certificate configuration",
            ),
            retryable=False,
        )
    if mentions("certificate verify failed", "certificate_verify_failed", "hostname mismatch"):
        return SSLErrorInfo(
            kind="verify_failed",
            category="certificate",
            original_message=error.message,
            user_message=(
                "SSL certificate verification failed. "
                "The server's certificate could not be verified."
            ),
            technical_details=f"Certificate verification error: {detail}",
            suggestions=(
                "Check if the server certificate is valid and properly configured",
                "Verify the certificate chain is complete",
                "For development: consider disabling verification (never in production)",
                "Contact the server administrator if this persists",
            ),
            retryable=False,
        )
    if mentions("ssl", "tls", "handshake"):
        return SSLErrorInfo(
            kind="generic",
            category="certificate",
            original_message=error.message,
            user_message="SSL/TLS connection error occurred.",
            technical_details=f"SSL/TLS error: {detail}",
            suggestions=(
                "Check your internet connection",
                "Verify the server supports the required SSL/TLS version",
                "Try again in a few moments",
                "Contact support if the problem persists",
            ),
            retryable=True,
        )
    return SSLErrorInfo(
        kind="unknown",
        category="unknown",
        original_message=error.message,
        user_message="A secure connection error occurred.",
        technical_details=f"Connection error: {detail}",
        suggestions=(
            "Check your internet connection",
            "Try again in a few moments",
            "Contact support if the problem persists",
        ),
        retryable=True,
    )


def transform_ssl_error(
    error: HttpClientError,
    config: SSLErrorConfig | None = None,
    *,
    development: bool = False,
) -> HttpClientError:
    """Replace the message of a TLS failure and attach an ``ssl_error`` annotation.

    Non-TLS errors come back untouched.
    """
    config = config or SSLErrorConfig()
    if not config.enabled or not is_ssl_error(error):
        return error

    info = analyze_ssl_error(error)
    transformed = config.custom_transformer(error) if config.custom_transformer else error
    transformed.message = info.user_message
    transformed.annotations["ssl_error"] = {
        "kind": info.kind,
        "category": info.category,
        "retryable": info.retryable,
        "suggestions": list(info.suggestions) if config.include_suggestions else None,
        "technical_details": (
            info.technical_details
            if config.include_technical_details or development
            else None
        ),
        "original_error": info.original_message if development else None,
    }
    return transformed


def create_ssl_error_interceptor(
    config: SSLErrorConfig | None = None, *, development: bool | None = None
) -> ErrorInterceptor:
    config = config or SSLErrorConfig()
    is_development = config.development if development is None else development

    def interceptor(error: HttpClientError) -> HttpClientError:
        return transform_ssl_error(error, config, development=is_development)

    return interceptor


def create_development_ssl_error_interceptor() -> ErrorInterceptor:
    return create_ssl_error_interceptor(
        SSLErrorConfig(include_technical_details=True, include_suggestions=True),
        development=True,
    )


def create_production_ssl_error_interceptor(
    custom_transformer: SSLErrorTransformer | None = None,
) -> ErrorInterceptor:
    return create_ssl_error_interceptor(
        SSLErrorConfig(
            include_technical_details=False,
            include_suggestions=False,
            custom_transformer=custom_transformer,
        ),
        development=False,
    )


def should_retry_ssl_error(error: HttpClientError) -> bool:
    if not is_ssl_error(error):
        return False
    return analyze_ssl_error(error).retryable


def ssl_error_suggestions(error: HttpClientError) -> list[str]:
    if not is_ssl_error(error):
        return []
    return list(analyze_ssl_error(error).suggestions)
