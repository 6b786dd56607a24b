# pyright: reportUnknownParameterType=false, reportUnknownMemberType=false
# pyright: reportMissingParameterType=false
from unittest.mock import Mock, patch

import pytest
import requests

from relay.networking.client import HttpClient
from relay.networking.config import HttpClientConfig, SSLErrorConfig
from relay.networking.errors import (
    HttpStatusError,
    RetryableHttpError,
    RequestTimeoutError,
)
from relay.networking.ssl_errors import (
    analyze_ssl_error,
    create_development_ssl_error_interceptor,
    create_production_ssl_error_interceptor,
    create_ssl_error_interceptor,
    is_ssl_error,
    should_retry_ssl_error,
    ssl_error_suggestions,
    transform_ssl_error,
)


def _tls_failure(message: str) -> RetryableHttpError:
    cause = requests.exceptions.SSLError(message)
    return RetryableHttpError(message, cause=cause)


def test_detects_tls_failure_by_cause_type():
    error = RetryableHttpError(
        "connection dropped", cause=requests.exceptions.SSLError("EOF occurred")
    )

    assert is_ssl_error(error)


def test_detects_tls_failure_by_message():
    assert is_ssl_error(RetryableHttpError("certificate verify failed"))


@pytest.mark.parametrize(
    "error",
    [
        RetryableHttpError("Connection refused"),
        HttpStatusError("HTTP 500 Internal Server Error", status_code=500),
        RequestTimeoutError("Request timeout after 5s"),
    ],
)
def test_ignores_non_tls_failures(error):
    assert not is_ssl_error(error)
    assert transform_ssl_error(error) is error
    assert not should_retry_ssl_error(error)
    assert ssl_error_suggestions(error) == []


@pytest.mark.parametrize(
    "message, kind, retryable",
    [
        ("[SSL: CERTIFICATE_VERIFY_FAILED] certificate has expired", "expired", False),
        (
            "certificate verify failed: self signed certificate in certificate chain",
            "self_signed",
            False,
        ),
        (
            "certificate verify failed: unable to get local issuer certificate",
            "untrusted_ca",
            False,
        ),
        ("certificate verify failed: Hostname mismatch", "verify_failed", False),
        ("[SSL: WRONG_VERSION_NUMBER] wrong version number", "generic", True),
        ("EOF occurred in violation of protocol", "unknown", True),
    ],
)
def test_classifies_tls_failures(message, kind, retryable):
    info = analyze_ssl_error(_tls_failure(message))

    assert info.kind == kind
    assert info.retryable is retryable
    assert info.original_message == message
    assert info.suggestions
    assert should_retry_ssl_error(_tls_failure(message)) is retryable


def test_default_transform_rewrites_message_and_annotates():
    error = _tls_failure("certificate has expired")

    result = transform_ssl_error(error)

    assert result.message == "The server's SSL certificate has expired."
    annotation = result.annotations["ssl_error"]
    assert annotation["kind"] == "expired"
    assert annotation["category"] == "certificate"
    assert annotation["retryable"] is False
    assert annotation["suggestions"][0].startswith("The server administrator")
    assert annotation["technical_details"] is None
    assert annotation["original_error"] is None


def test_disabled_config_leaves_error_alone():
    error = _tls_failure("certificate has expired")

    assert transform_ssl_error(error, SSLErrorConfig(enabled=False)) is error
    assert error.message == "certificate has expired"


def test_development_interceptor_keeps_diagnostics():
    interceptor = create_development_ssl_error_interceptor()

    result = interceptor(_tls_failure("unable to get local issuer certificate"))

    annotation = result.annotations["ssl_error"]
    assert annotation["kind"] == "untrusted_ca"
    assert annotation["technical_details"].startswith("Certificate authority error:")
    assert annotation["original_error"] == "unable to get local issuer certificate"


def test_production_interceptor_uses_custom_transformer():
    transformer = Mock(side_effect=lambda error: error.annotate(reported=True))
    interceptor = create_production_ssl_error_interceptor(transformer)

    result = interceptor(_tls_failure("certificate verify failed"))

    transformer.assert_called_once()
    assert result.annotations["reported"] is True
    assert result.annotations["ssl_error"]["suggestions"] is None
    assert result.annotations["ssl_error"]["technical_details"] is None


def test_interceptor_development_flag_follows_config():
    interceptor = create_ssl_error_interceptor(SSLErrorConfig(development=True))

    result = interceptor(_tls_failure("certificate verify failed"))

    assert result.annotations["ssl_error"]["original_error"] == "certificate verify failed"


@pytest.mark.asyncio
async def test_client_reports_tls_failures_readably():
    client = HttpClient(HttpClientConfig(timeout_seconds=5.0))

    with patch("requests.Session.request") as mock_request:
        mock_request.side_effect = requests.exceptions.SSLError(
            "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed: "
            "self signed certificate"
        )
        result = await client.get("https://self-signed.example.com")

    assert not result.ok
    assert isinstance(result.error, RetryableHttpError)
    assert result.error.message == (
        "The server is using a self-signed certificate which cannot be verified."
    )
    assert result.error.annotations["ssl_error"]["kind"] == "self_signed"
    assert result.meta["final_error"] == "RetryableHttpError"


@pytest.mark.asyncio
async def test_client_can_disable_tls_rewriting():
    config = HttpClientConfig(ssl_errors=SSLErrorConfig(enabled=False))
    client = HttpClient(config)

    with patch("requests.Session.request") as mock_request:
        mock_request.side_effect = requests.exceptions.SSLError("certificate verify failed")
        result = await client.get("https://self-signed.example.com")

    assert result.error.message == "certificate verify failed"
    assert "ssl_error" not in result.error.annotations
