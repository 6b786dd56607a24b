"""Structured logging and redaction helpers."""

from __future__ import annotations

import logging
import re
import sys
from typing import Any, Mapping, TextIO

import structlog

# Headers that must never appear in logs
SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "x-api-key",
        "x-auth-token",
        "proxy-authorization",
        "set-cookie",
    }
)

REDACTED_VALUE = "[REDACTED]"

_URL_CREDENTIALS = re.compile(r"(https?://)([^:/@]+):([^@]+)@")


def configure_logging(
    level: int = logging.INFO,
    output: TextIO = sys.stderr,
    json_format: bool = True,
) -> None:
    """Configure structlog for applications embedding the client.

    Args:
        level: Minimum level for the default logger.
        output: Output stream (default: stderr).
        json_format: Render JSON lines instead of colored console output.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, *, debug: bool = False) -> Any:
    """Return a logger bound to ``component``.

    Debug events are only emitted when ``debug`` is set; everything from INFO
    upwards always goes through.
    """
    level = logging.DEBUG if debug else logging.INFO
    return structlog.wrap_logger(
        None,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        component=component,
    )


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Copy ``headers`` with sensitive values replaced by ``[REDACTED]``."""
    result: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in SENSITIVE_HEADERS:
            result[key] = REDACTED_VALUE
        else:
            result[key] = value
    return result


def redact_url_credentials(url: str) -> str:
    """Hide ``user:password@`` credentials embedded in a URL."""
    return _URL_CREDENTIALS.sub(r"\1[REDACTED]:[REDACTED]@", url)
