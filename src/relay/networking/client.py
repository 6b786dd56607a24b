"""Async HTTP client interface for the relay networking layer.

``HttpClient`` wires the interceptor chains, the retry engine and the
credential coordinator around one logical call. Every request operation
returns a Result holding either a ``ResponseEnvelope`` or the final
``HttpClientError``, plus request metadata.
"""

from __future__ import annotations

import asyncio
import json as jsonlib
from dataclasses import replace
from typing import Any, Callable, Mapping, Sequence
from urllib.parse import urlsplit

from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers

from ..auth.manager import AuthManager
from ..auth.storage import CookieStorage, TokenStorage
from ..auth.tokens import AuthState, Credentials
from ..observability import get_logger, redact_headers, redact_url_credentials
from .cancellation import CancelToken
from .config import HttpClientConfig
from .errors import (
    AuthenticationError,
    HttpClientError,
    HttpStatusError,
    InterceptorError,
    RetryableHttpError,
    format_status_message,
)
from .interceptors import (
    ErrorInterceptor,
    HookHandle,
    InterceptorKind,
    InterceptorManager,
    RequestInterceptor,
    ResponseInterceptor,
    resolve,
)
from .retry import RetryManager, RetryPolicy
from .ssl_errors import create_ssl_error_interceptor
from .transport import RequestsTransport, Transport, TransportResponse
from .types import Err, Ok, ProgressCallback, RequestSpec, ResponseEnvelope, Result
from .upload import (
    FormData,
    UploadFile,
    UploadProgressEvent,
    UploadProgressTracker,
    build_upload_form,
)

ClientResult = Result[ResponseEnvelope, HttpClientError]
UploadCallback = Callable[..., Any]


def _interceptor_failure(stage: str, exc: Exception) -> InterceptorError:
    """Wrap any failure of a request/response chain as a terminal error."""
    status_code = exc.status_code if isinstance(exc, HttpClientError) else None
    return InterceptorError(
        f"{stage} interceptor failed: {exc}", status_code=status_code, cause=exc
    )


class HttpClient:
    """Core HTTP client interface (async).

    Calls never raise for request failures: they settle as ``Err`` after the
    error interceptors have run. Programming errors such as a non-positive
    timeout override still raise ``ValueError``.
    """

    def __init__(
        self,
        config: HttpClientConfig | None = None,
        *,
        transport: Transport | None = None,
        auth_storage: TokenStorage | None = None,
    ) -> None:
        """Create a new HttpClient.

        Args:
            config: Configuration for timeouts, headers, retry and auth.
            transport: Replacement for the default ``requests`` transport.
            auth_storage: Credential storage overriding ``config.auth.storage``.
        """
        self._config = config or HttpClientConfig()
        debug = self._config.debug
        self._log = get_logger("client", debug=debug)
        self._transport: Transport = transport or RequestsTransport(
            verify_tls=self._config.verify_tls, debug=debug
        )
        self._interceptors = InterceptorManager(
            self._config.interceptors_enabled, debug=debug
        )
        self._retry = RetryManager(self._config.build_retry_policy(), debug=debug)

        auth_config = self._config.auth
        if (
            auth_storage is None
            and auth_config is not None
            and auth_config.storage == "cookie"
        ):
            session = getattr(self._transport, "session", None)
            auth_storage = CookieStorage(
                session.cookies if session is not None else None,
                auth_config.cookie_options,
            )
        self._auth = AuthManager(auth_config, storage=auth_storage, debug=debug)
        self._auth_handle: HookHandle | None = None
        self._auth_init: asyncio.Future[None] | None = None
        self._background: set[asyncio.Future[Any]] = set()

        self._ssl_handle: HookHandle | None = None
        if self._config.ssl_errors.enabled:
            self._ssl_handle = self._interceptors.add_error_interceptor(
                create_ssl_error_interceptor(self._config.ssl_errors)
            )

    @property
    def config(self) -> HttpClientConfig:
        return self._config

    @property
    def interceptors(self) -> InterceptorManager:
        return self._interceptors

    @property
    def retry(self) -> RetryManager:
        return self._retry

    @property
    def auth(self) -> AuthManager:
        return self._auth

    @property
    def transport(self) -> Transport:
        return self._transport

    def _get_timeout(self, override: float | None) -> float:
        """Resolve timeout preference."""
        if override is not None:
            if override <= 0:
                raise ValueError("timeout override must be > 0 when provided")
            return override
        return self._config.timeout_seconds

    def _resolve_url(self, path: str) -> str:
        """Return ``path`` joined to the base URL with exactly one slash."""
        if urlsplit(path).scheme in ("http", "https"):
            return path
        base_url = self._config.base_url
        if not base_url:
            return path
        return f"{base_url.rstrip('/')}/{path.lstrip('/')}"

    def _merge_headers(
        self, headers: Mapping[str, str] | None
    ) -> CaseInsensitiveDict[str]:
        merged: CaseInsensitiveDict[str] = CaseInsensitiveDict()
        if self._config.user_agent:
            merged["User-Agent"] = self._config.user_agent
        merged.update(self._config.default_headers)
        if headers:
            merged.update(headers)
        return merged

    def _build_meta(
        self,
        method: str,
        request_url: str,
        context: Mapping[str, Any] | None,
        attempts: int,
        timeout: float | None,
        envelope: ResponseEnvelope | None = None,
        error: HttpClientError | None = None,
    ) -> dict[str, Any]:
        """Construct metadata dictionary from the outcome and context."""
        meta: dict[str, Any] = {}
        meta["method"] = method
        meta["url"] = request_url
        meta["attempts"] = attempts
        meta["timeout_s"] = timeout
        if context:
            context_dict = dict(context)
            meta["context"] = context_dict
            for key, value in context_dict.items():
                meta.setdefault(key, value)

        if envelope is not None:
            meta["status"] = envelope.status_code
            meta["status_code"] = envelope.status_code
            meta["url"] = envelope.url
            meta["reason"] = envelope.status_text
            if envelope.elapsed_s is not None:
                meta["elapsed_s"] = envelope.elapsed_s
        if error is not None:
            if error.status_code is not None:
                meta["status"] = error.status_code
                meta["status_code"] = error.status_code
                meta["reason"] = error.status_text
            meta["final_error"] = type(error).__name__

        return meta

    def _decode(self, response: TransportResponse) -> Any:
        """Parse JSON bodies; anything else comes back as text."""
        content_type = response.headers.get("Content-Type", "")
        encoding = get_encoding_from_headers(response.headers) or "utf-8"
        try:
            text = response.content.decode(encoding, errors="replace")
        except LookupError:
            text = response.content.decode("utf-8", errors="replace")
        if "json" in content_type.lower() and text.strip():
            try:
                return jsonlib.loads(text)
            except ValueError:
                self._log.debug("json_decode_failed", url=response.url)
        return text

    # -- request pipeline ------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Any = None,
        json: Any = None,
        data: Any = None,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
        retry: RetryPolicy | None = None,
        retries: int | None = None,
        allow_redirects: bool = True,
        context: Mapping[str, Any] | None = None,
        on_upload_progress: ProgressCallback | None = None,
        skip_auth_refresh: bool = False,
        retry_unauthorized: bool = False,
    ) -> ClientResult:
        """Perform one logical HTTP call.

        Args:
            method: HTTP verb.
            path: Absolute URL, or a path joined to ``config.base_url``.
            headers: Per-request headers merged over the defaults.
            params: Query parameters.
            json: Structured body serialized as JSON.
            data: Raw body (bytes, str) or a ``FormData``.
            timeout: Override timeout in seconds for this request.
            cancel_token: External cancellation; replaces the timeout token.
            retry: Retry policy for this call only.
            retries: Shortcut overriding ``max_retries`` of the policy.
            allow_redirects: Whether redirects should be followed.
            context: Optional caller context copied into the metadata.
            on_upload_progress: Receives ``(loaded, total)`` byte counts.
            skip_auth_refresh: Do not refresh credentials for this call.
            retry_unauthorized: On 401, wait for credential refresh and send
                the request once more when it succeeded.

        Returns:
            Result containing the response envelope on success, or the final
            error on failure.
        """
        resolved_timeout = self._get_timeout(timeout)
        policy = retry or self._retry.policy
        if retries is not None:
            policy = replace(policy, max_retries=retries)
        spec = RequestSpec(
            method=method.upper(),
            url=self._resolve_url(path),
            headers=self._merge_headers(headers),
            params=params,
            body=data,
            json=json,
            timeout=resolved_timeout,
            cancel_token=cancel_token,
            retry=policy,
            allow_redirects=allow_redirects,
            on_upload_progress=on_upload_progress,
            skip_auth_refresh=skip_auth_refresh,
        )

        await self._ensure_auth_ready(skip_auth_refresh)
        result = await self._execute(spec, context)
        if result.ok or not self._reacts_to_unauthorized(spec, result.error):
            return result

        pending = self._schedule_unauthorized()
        if not retry_unauthorized:
            return result
        if not await pending:
            return result
        self._log.debug("unauthorized_resend", url=redact_url_credentials(spec.url))
        return await self._execute(spec, context)

    async def _execute(
        self, spec: RequestSpec, context: Mapping[str, Any] | None
    ) -> ClientResult:
        attempts = 0

        async def attempt() -> ResponseEnvelope:
            nonlocal attempts
            attempts += 1
            return await self._send_once(spec)

        safe_url = redact_url_credentials(spec.url)
        self._log.debug(
            "request_started",
            method=spec.method,
            url=safe_url,
            headers=redact_headers(spec.headers),
        )
        try:
            envelope = await self._retry.execute_with_retry(
                attempt,
                policy=spec.retry,
                cancel_token=spec.cancel_token,
                context=f"{spec.method} {safe_url}",
            )
        except HttpClientError as exc:
            error = await self._interceptors.apply_error_interceptors(exc)
            self._log.debug(
                "request_failed",
                method=spec.method,
                url=safe_url,
                attempts=attempts,
                error=error.message,
                status_code=error.status_code,
            )
            return Err(
                error,
                meta=self._build_meta(
                    spec.method,
                    spec.url,
                    context,
                    attempts,
                    spec.timeout,
                    error=error,
                ),
            )

        self._log.debug(
            "request_completed",
            method=spec.method,
            url=safe_url,
            attempts=attempts,
            status_code=envelope.status_code,
        )
        return Ok(
            envelope,
            meta=self._build_meta(
                spec.method,
                spec.url,
                context,
                attempts,
                spec.timeout,
                envelope=envelope,
            ),
        )

    async def _send_once(self, spec: RequestSpec) -> ResponseEnvelope:
        try:
            prepared = await self._interceptors.apply_request_interceptors(spec)
        except Exception as exc:
            raise _interceptor_failure("Request", exc) from exc

        token = prepared.cancel_token
        owns_token = token is None
        if token is None:
            token = CancelToken()
            token.cancel_after(prepared.timeout or self._config.timeout_seconds)
        try:
            response = await self._transport.send(prepared, token)
        except HttpClientError:
            raise
        except Exception as exc:
            raise RetryableHttpError(
                str(exc) or type(exc).__name__, cause=exc
            ) from exc
        finally:
            if owns_token:
                token.disarm()

        envelope = ResponseEnvelope(
            status_code=response.status_code,
            status_text=response.reason,
            headers=response.headers,
            data=self._decode(response),
            url=response.url or prepared.url,
            elapsed_s=response.elapsed_s,
            request=prepared,
        )
        if not envelope.ok:
            raise HttpStatusError(
                format_status_message(response.status_code, response.reason or None),
                status_code=response.status_code,
                status_text=response.reason,
                response=envelope,
            )

        try:
            return await self._interceptors.apply_response_interceptors(envelope)
        except Exception as exc:
            raise _interceptor_failure("Response", exc) from exc

    # -- verb helpers ----------------------------------------------------------

    async def get(self, path: str, **options: Any) -> ClientResult:
        """Perform an HTTP GET request; ``options`` are those of ``request``."""
        return await self.request("GET", path, **options)

    async def head(self, path: str, **options: Any) -> ClientResult:
        return await self.request("HEAD", path, **options)

    async def options(self, path: str, **options: Any) -> ClientResult:
        return await self.request("OPTIONS", path, **options)

    async def delete(self, path: str, **options: Any) -> ClientResult:
        return await self.request("DELETE", path, **options)

    async def post(
        self, path: str, json: Any = None, *, data: Any = None, **options: Any
    ) -> ClientResult:
        """Perform an HTTP POST request with a JSON or raw body."""
        return await self.request("POST", path, json=json, data=data, **options)

    async def put(
        self, path: str, json: Any = None, *, data: Any = None, **options: Any
    ) -> ClientResult:
        return await self.request("PUT", path, json=json, data=data, **options)

    async def patch(
        self, path: str, json: Any = None, *, data: Any = None, **options: Any
    ) -> ClientResult:
        return await self.request("PATCH", path, json=json, data=data, **options)

    # -- uploads ---------------------------------------------------------------

    async def upload_form_data(
        self,
        path: str,
        form: FormData | Mapping[str, Any],
        *,
        method: str = "POST",
        headers: Mapping[str, str] | None = None,
        on_progress: Callable[[UploadProgressEvent], Any] | None = None,
        on_upload_start: UploadCallback | None = None,
        on_upload_complete: UploadCallback | None = None,
        on_upload_error: UploadCallback | None = None,
        **options: Any,
    ) -> ClientResult:
        """Send ``form`` as ``multipart/form-data``.

        ``on_progress`` receives ``UploadProgressEvent`` values derived from
        the bytes written. ``on_upload_complete`` gets the response envelope
        and ``on_upload_error`` the final error.
        """
        if not isinstance(form, FormData):
            form = FormData.from_mapping(form)
        clean_headers = {
            key: value
            for key, value in (headers or {}).items()
            if key.lower() != "content-type"
        }
        tracker = UploadProgressTracker(on_progress) if on_progress else None

        if on_upload_start is not None:
            await resolve(on_upload_start())
        result = await self.request(
            method,
            path,
            headers=clean_headers,
            data=form,
            on_upload_progress=tracker,
            **options,
        )
        if result.ok:
            if on_upload_complete is not None:
                await resolve(on_upload_complete(result.value))
        elif on_upload_error is not None:
            await resolve(on_upload_error(result.error))
        return result

    async def upload_file(
        self,
        path: str,
        file: UploadFile | Sequence[UploadFile],
        *,
        field_name: str = "file",
        additional_fields: Mapping[str, str | int | float | bool] | None = None,
        filename: str | None = None,
        **options: Any,
    ) -> ClientResult:
        form = build_upload_form(
            file,
            field_name=field_name,
            additional_fields=additional_fields,
            filename=filename,
        )
        return await self.upload_form_data(path, form, **options)

    async def upload_files(
        self,
        path: str,
        files: Sequence[UploadFile],
        *,
        field_name: str = "files",
        **options: Any,
    ) -> ClientResult:
        return await self.upload_file(path, list(files), field_name=field_name, **options)

    # -- authentication --------------------------------------------------------

    async def _initialize_auth(self) -> None:
        try:
            await self._auth.initialize()
        except Exception as exc:  # noqa: BLE001
            self._log.warning("auth_initialize_failed", failure=repr(exc))
            return
        if self._auth.is_authenticated():
            self._install_auth_interceptor()

    async def _ensure_auth_initialized(self) -> None:
        if self._auth_init is None:
            self._auth_init = asyncio.ensure_future(self._initialize_auth())
        await self._auth_init

    async def _ensure_auth_ready(self, skip_auth_refresh: bool) -> None:
        if self._auth.config is None:
            return
        await self._ensure_auth_initialized()
        if skip_auth_refresh or not self._auth.needs_proactive_refresh():
            return
        try:
            await self._auth.refresh_tokens(self._refresh_request)
        except HttpClientError as exc:
            self._log.warning("proactive_refresh_failed", error=exc.message)

    def _install_auth_interceptor(self) -> None:
        self._remove_auth_interceptor()
        self._auth_handle = self._interceptors.add_request_interceptor(
            self._auth.create_auth_interceptor()
        )

    def _remove_auth_interceptor(self) -> None:
        if self._auth_handle is not None:
            self._auth_handle()
            self._auth_handle = None

    def _reacts_to_unauthorized(
        self, spec: RequestSpec, error: HttpClientError | None
    ) -> bool:
        config = self._auth.config
        return bool(
            error is not None
            and error.status_code == 401
            and config is not None
            and config.auto_refresh
            and not spec.skip_auth_refresh
        )

    def _schedule_unauthorized(self) -> asyncio.Future[bool]:
        task = asyncio.ensure_future(
            self._auth.handle_unauthorized(self._refresh_request)
        )
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Future[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        failure = task.exception()
        if failure is not None:
            self._log.warning("unauthorized_handling_failed", failure=repr(failure))

    async def _refresh_request(self, url: str, payload: dict[str, Any]) -> Any:
        result = await self.request(
            "POST", url, json=payload, retries=0, skip_auth_refresh=True
        )
        return result.unwrap().data

    async def wait_idle(self) -> None:
        """Wait for background credential handling started by 401 responses."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def login(
        self, credentials: Mapping[str, Any], *, login_url: str | None = None
    ) -> ClientResult:
        """Post ``credentials`` to the login endpoint and store the tokens."""
        config = self._auth.config
        url = login_url or (config.login_url if config is not None else None)
        if not url:
            error = AuthenticationError("Login URL not configured")
            await self._auth.handle_login_error(error)
            return Err(error, meta={"method": "POST", "url": None, "attempts": 0})

        await self._ensure_auth_initialized()
        result = await self.request(
            "POST", url, json=dict(credentials), skip_auth_refresh=True
        )
        if result.ok:
            stored = await self._auth.process_login_response(result.value.data)
            if stored is not None:
                self._install_auth_interceptor()
        else:
            await self._auth.handle_login_error(result.error)
        return result

    async def logout(self, *, logout_url: str | None = None) -> ClientResult | None:
        """Notify the logout endpoint (when configured) and drop credentials.

        Credentials are cleared whatever the endpoint answers.
        """
        config = self._auth.config
        url = logout_url or (config.logout_url if config is not None else None)
        result: ClientResult | None = None
        if url and self._auth.is_authenticated():
            result = await self.request("POST", url, skip_auth_refresh=True)
            if not result.ok:
                self._log.warning("logout_request_failed", error=result.error.message)
        await self._auth.handle_logout()
        self._remove_auth_interceptor()
        return result

    async def refresh_tokens(self) -> Result[Credentials, HttpClientError]:
        meta = {"operation": "refresh_tokens"}
        try:
            credentials = await self._auth.refresh_tokens(self._refresh_request)
        except HttpClientError as exc:
            return Err(exc, meta=meta)
        return Ok(credentials, meta=meta)

    async def set_tokens(self, credentials: Credentials) -> Credentials:
        await self._ensure_auth_initialized()
        stored = await self._auth.set_tokens(credentials)
        self._install_auth_interceptor()
        return stored

    def get_tokens(self) -> Credentials | None:
        return self._auth.get_tokens()

    async def clear_tokens(self) -> None:
        await self._auth.clear_tokens()
        self._remove_auth_interceptor()

    def is_authenticated(self) -> bool:
        return self._auth.is_authenticated()

    @property
    def auth_state(self) -> AuthState:
        return self._auth.state

    @property
    def user(self) -> Any:
        return self._auth.user

    def set_user(self, user: Any) -> None:
        self._auth.set_user(user)

    # -- interceptors and runtime configuration --------------------------------

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> HookHandle:
        return self._interceptors.add_request_interceptor(interceptor)

    def add_response_interceptor(
        self, interceptor: ResponseInterceptor
    ) -> HookHandle:
        return self._interceptors.add_response_interceptor(interceptor)

    def add_error_interceptor(self, interceptor: ErrorInterceptor) -> HookHandle:
        return self._interceptors.add_error_interceptor(interceptor)

    def remove_request_interceptor(self, interceptor: RequestInterceptor) -> bool:
        return self._interceptors.remove_request_interceptor(interceptor)

    def remove_response_interceptor(self, interceptor: ResponseInterceptor) -> bool:
        return self._interceptors.remove_response_interceptor(interceptor)

    def remove_error_interceptor(self, interceptor: ErrorInterceptor) -> bool:
        return self._interceptors.remove_error_interceptor(interceptor)

    def clear_interceptors(self, kind: InterceptorKind | None = None) -> None:
        """Drop registered interceptors, including the built-in auth and SSL ones."""
        self._interceptors.clear(kind)

    def set_interceptors_enabled(self, enabled: bool) -> None:
        self._interceptors.set_enabled(enabled)
        self._config = replace(self._config, interceptors_enabled=enabled)

    def update_retry_policy(self, **changes: Any) -> RetryPolicy:
        policy = self._retry.update(**changes)
        self._config = replace(self._config, retry_policy=policy)
        return policy

    def update_base_url(self, base_url: str) -> None:
        self._config = replace(self._config, base_url=base_url)

    def update_timeout(self, timeout_seconds: float) -> None:
        self._config = replace(self._config, timeout_seconds=timeout_seconds)

    def update_default_headers(
        self, headers: Mapping[str, str], *, merge: bool = True
    ) -> None:
        combined = dict(self._config.default_headers) if merge else {}
        combined.update(headers)
        self._config = replace(self._config, default_headers=combined)

    # -- lifecycle -------------------------------------------------------------

    async def close(self) -> None:
        """Stop background credential work, then release the transport."""
        pending = list(self._background)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self._auth.cancel_refresh()
        await self._transport.close()

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def create_client(
    config: HttpClientConfig | None = None,
    *,
    transport: Transport | None = None,
    **overrides: Any,
) -> HttpClient:
    """Return an independently configured client.

    ``overrides`` replace fields of ``config`` (or of the default config).
    """
    base = config or HttpClientConfig()
    if overrides:
        base = replace(base, **overrides)
    return HttpClient(base, transport=transport)
