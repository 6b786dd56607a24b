# pyright: reportUnknownParameterType=false, reportUnknownMemberType=false
# pyright: reportMissingParameterType=false
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from requests.cookies import RequestsCookieJar

from relay.auth.config import AuthConfig, CookieOptions
from relay.auth.events import AuthEvents
from relay.auth.manager import AuthManager
from relay.auth.storage import CookieStorage, MemoryStorage, resolve_storage
from relay.auth.tokens import (
    Credentials,
    extract_credentials,
    format_token_time_remaining,
    validate_credentials,
)
from relay.networking.errors import AuthenticationError, HttpStatusError
from relay.networking.types import RequestSpec

NOW = 1_700_000_000.0
REFRESH_URL = "https://api.example.com/auth/refresh"


class FixedClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _manager(clock=None, **config) -> AuthManager:
    config.setdefault("token_refresh_url", REFRESH_URL)
    return AuthManager(AuthConfig(**config), clock=clock or FixedClock())


def _spec() -> RequestSpec:
    return RequestSpec(method="GET", url="https://api.example.com/me")


@pytest.mark.asyncio
async def test_set_tokens_resolves_relative_expiry_and_persists():
    manager = _manager()

    stored = await manager.set_tokens(
        Credentials(access_token="A", refresh_token="R", expires_in=3600)
    )

    assert stored.expires_at == NOW + 3600
    assert manager.get_tokens() == stored
    assert manager.is_authenticated()
    storage = manager.storage
    assert storage.get_item("authToken") == "A"
    assert storage.get_item("refreshToken") == "R"
    assert float(storage.get_item("authToken_expiresAt")) == NOW + 3600


@pytest.mark.asyncio
async def test_is_token_expired_threshold_boundary():
    clock = FixedClock()
    manager = _manager(clock)
    await manager.set_tokens(Credentials(access_token="A", expires_at=NOW + 300))

    assert not manager.is_token_expired(0)
    assert manager.is_token_expired()
    clock.now = NOW + 299
    assert not manager.is_token_expired(0)
    clock.now = NOW + 300
    assert manager.is_token_expired(0)


@pytest.mark.asyncio
async def test_credentials_without_expiry_never_expire():
    manager = _manager()
    await manager.set_tokens(Credentials(access_token="A"))

    assert not manager.is_token_expired(10_000)
    assert not manager.needs_proactive_refresh()


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_request():
    manager = _manager()
    await manager.set_tokens(Credentials(access_token="old", refresh_token="R"))
    calls = []
    release = asyncio.Event()

    async def refresh_fn(url, payload):
        calls.append((url, payload))
        await release.wait()
        return {"accessToken": "new", "expiresIn": 60}

    first = asyncio.ensure_future(manager.refresh_tokens(refresh_fn))
    second = asyncio.ensure_future(manager.refresh_tokens(refresh_fn))
    await asyncio.sleep(0)
    assert manager.is_refreshing
    release.set()
    results = await asyncio.gather(first, second)

    assert calls == [(REFRESH_URL, {"refreshToken": "R"})]
    assert results[0] == results[1]
    assert results[0].access_token == "new"
    assert results[0].refresh_token == "R"
    assert not manager.is_refreshing
    assert manager.state.last_refresh == NOW


@pytest.mark.asyncio
async def test_refresh_emits_token_refresh():
    listener = Mock()
    manager = _manager(on_token_refresh=listener)
    await manager.set_tokens(Credentials(access_token="old", refresh_token="R"))

    stored = await manager.refresh_tokens(
        AsyncMock(return_value={"access_token": "new", "refresh_token": "R2"})
    )

    listener.assert_called_once_with(stored)
    assert stored.refresh_token == "R2"


@pytest.mark.asyncio
async def test_refresh_failure_clears_session_and_fires_expired_once():
    expired = Mock()
    manager = _manager(on_token_expired=expired)
    await manager.set_tokens(Credentials(access_token="old", refresh_token="R"))
    failure = HttpStatusError("HTTP 401", status_code=401)

    with pytest.raises(HttpStatusError) as excinfo:
        await manager.refresh_tokens(AsyncMock(side_effect=failure))

    assert excinfo.value is failure
    assert manager.get_tokens() is None
    assert manager.storage.get_item("authToken") is None
    expired.assert_called_once_with()


@pytest.mark.asyncio
async def test_refresh_failure_from_non_client_error_is_wrapped():
    manager = _manager()
    await manager.set_tokens(Credentials(access_token="old", refresh_token="R"))

    with pytest.raises(AuthenticationError, match="Token refresh failed"):
        await manager.refresh_tokens(AsyncMock(side_effect=KeyError("data")))


@pytest.mark.asyncio
async def test_refresh_response_without_token_is_an_error():
    manager = _manager()
    await manager.set_tokens(Credentials(access_token="old", refresh_token="R"))

    with pytest.raises(AuthenticationError, match="Failed to extract tokens"):
        await manager.refresh_tokens(AsyncMock(return_value={"ok": True}))
    assert not manager.is_authenticated()


@pytest.mark.asyncio
async def test_refresh_requires_configured_url():
    manager = AuthManager(AuthConfig(), clock=FixedClock())
    await manager.set_tokens(Credentials(access_token="A", refresh_token="R"))
    refresh_fn = AsyncMock()

    with pytest.raises(AuthenticationError, match="Token refresh URL not configured"):
        await manager.refresh_tokens(refresh_fn)
    refresh_fn.assert_not_awaited()


@pytest.mark.asyncio
async def test_refresh_requires_refresh_token():
    manager = _manager()
    await manager.set_tokens(Credentials(access_token="A"))

    with pytest.raises(AuthenticationError, match="No refresh token available"):
        await manager.refresh_tokens(AsyncMock())


@pytest.mark.asyncio
async def test_unauthorized_without_refresh_token_clears_without_network():
    expired = Mock()
    manager = _manager(on_token_expired=expired)
    await manager.set_tokens(Credentials(access_token="A"))
    refresh_fn = AsyncMock()

    assert await manager.handle_unauthorized(refresh_fn) is False

    refresh_fn.assert_not_awaited()
    assert not manager.is_authenticated()
    expired.assert_called_once_with()


@pytest.mark.asyncio
async def test_unauthorized_with_refresh_token_refreshes():
    manager = _manager()
    await manager.set_tokens(Credentials(access_token="A", refresh_token="R"))
    refresh_fn = AsyncMock(return_value={"accessToken": "B"})

    assert await manager.handle_unauthorized(refresh_fn) is True

    refresh_fn.assert_awaited_once()
    assert manager.get_tokens().access_token == "B"


@pytest.mark.asyncio
async def test_unauthorized_refresh_failure_reports_false():
    expired = Mock()
    manager = _manager(on_token_expired=expired)
    await manager.set_tokens(Credentials(access_token="A", refresh_token="R"))

    refresh_fn = AsyncMock(side_effect=HttpStatusError("HTTP 401", status_code=401))
    assert await manager.handle_unauthorized(refresh_fn) is False

    expired.assert_called_once_with()
    assert not manager.is_authenticated()


@pytest.mark.asyncio
async def test_unauthorized_without_config_is_ignored():
    manager = AuthManager()

    assert await manager.handle_unauthorized(AsyncMock()) is False


@pytest.mark.asyncio
async def test_needs_proactive_refresh_inside_threshold():
    clock = FixedClock()
    manager = _manager(clock, refresh_threshold_seconds=60)
    await manager.set_tokens(
        Credentials(access_token="A", refresh_token="R", expires_in=120)
    )

    assert not manager.needs_proactive_refresh()
    clock.now = NOW + 61
    assert manager.needs_proactive_refresh()


@pytest.mark.asyncio
async def test_auth_interceptor_prefix_resolution():
    manager = _manager()
    interceptor = manager.create_auth_interceptor()

    assert "Authorization" not in interceptor(_spec()).headers

    await manager.set_tokens(Credentials(access_token="A", token_type="MAC"))
    assert interceptor(_spec()).headers["Authorization"] == "MAC A"

    await manager.set_tokens(Credentials(access_token="A"))
    assert interceptor(_spec()).headers["Authorization"] == "Bearer A"

    prefixed = _manager(token_prefix="Token")
    await prefixed.set_tokens(Credentials(access_token="Z", token_type="MAC"))
    spec = prefixed.create_auth_interceptor()(_spec())
    assert spec.headers["authorization"] == "Token Z"


@pytest.mark.asyncio
async def test_initialize_restores_persisted_credentials():
    storage = MemoryStorage()
    storage.set_item("authToken", "A")
    storage.set_item("refreshToken", "R")
    storage.set_item("authToken_expiresAt", str(NOW + 50))
    storage.set_item("authToken_tokenType", "Bearer")
    manager = AuthManager(AuthConfig(), storage=storage, clock=FixedClock())

    await manager.initialize()

    assert manager.initialized
    assert manager.get_tokens() == Credentials(
        access_token="A",
        refresh_token="R",
        expires_at=NOW + 50,
        token_type="Bearer",
    )


@pytest.mark.asyncio
async def test_initialize_ignores_malformed_expiry():
    storage = MemoryStorage()
    storage.set_item("authToken", "A")
    storage.set_item("authToken_expiresAt", "tomorrow")
    manager = AuthManager(AuthConfig(), storage=storage)

    await manager.initialize()

    assert manager.get_tokens().expires_at is None


@pytest.mark.asyncio
async def test_initialize_runs_once():
    storage = Mock()
    storage.get_item.return_value = None
    manager = AuthManager(AuthConfig(), storage=storage)

    await manager.initialize()
    await manager.initialize()

    storage.get_item.assert_called_once_with("authToken")


@pytest.mark.asyncio
async def test_custom_async_storage():
    class AsyncStorage:
        def __init__(self):
            self.items = {}

        async def get_item(self, key):
            return self.items.get(key)

        async def set_item(self, key, value):
            self.items[key] = value

        async def remove_item(self, key):
            self.items.pop(key, None)

    storage = AsyncStorage()
    config = AuthConfig(storage="custom", custom_storage=storage)
    manager = AuthManager(config)

    await manager.set_tokens(Credentials(access_token="A", refresh_token="R"))
    assert storage.items == {"authToken": "A", "refreshToken": "R"}

    await manager.clear_tokens()
    assert storage.items == {}


@pytest.mark.asyncio
async def test_logout_clears_user_and_notifies():
    on_logout = AsyncMock()
    manager = _manager(on_logout=on_logout)
    await manager.set_tokens(Credentials(access_token="A"))
    manager.set_user({"id": 1})

    await manager.handle_logout()

    assert manager.user is None
    assert not manager.state.is_authenticated
    on_logout.assert_awaited_once_with()


@pytest.mark.asyncio
async def test_process_login_response_emits_login():
    on_login = Mock()
    manager = _manager(on_login_success=on_login)

    stored = await manager.process_login_response(
        {"accessToken": "A", "refreshToken": "R", "expiresIn": 10}
    )

    assert stored.expires_at == NOW + 10
    on_login.assert_called_once_with(stored)
    assert await manager.process_login_response({"message": "nope"}) is None


@pytest.mark.asyncio
async def test_custom_token_extractor_is_used():
    manager = _manager(
        extract_tokens=lambda data: Credentials(access_token=data["jwt"])
    )

    stored = await manager.process_login_response({"jwt": "J"})

    assert stored.access_token == "J"


def test_cookie_storage_round_trips_through_jar():
    jar = RequestsCookieJar()
    storage = CookieStorage(jar, CookieOptions(domain="example.com", http_only=True))

    storage.set_item("authToken", "a b;c")
    storage.set_item("authToken", "second")

    cookies = [cookie for cookie in jar if cookie.name == "authToken"]
    assert len(cookies) == 1
    assert cookies[0].secure
    assert cookies[0].has_nonstandard_attr("HttpOnly")
    assert storage.get_item("authToken") == "second"

    storage.set_item("refreshToken", "a b;c")
    assert storage.get_item("refreshToken") == "a b;c"

    storage.remove_item("authToken")
    assert storage.get_item("authToken") is None


def test_resolve_storage_by_strategy():
    jar = RequestsCookieJar()
    custom = MemoryStorage()

    assert isinstance(resolve_storage(AuthConfig()), MemoryStorage)
    cookie = resolve_storage(AuthConfig(storage="cookie"), cookie_jar=jar)
    assert isinstance(cookie, CookieStorage)
    assert cookie.jar is jar
    assert (
        resolve_storage(AuthConfig(storage="custom", custom_storage=custom)) is custom
    )


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_others():
    events = AuthEvents()
    after = Mock()

    def explode():
        raise RuntimeError("listener bug")

    events.on("logout", explode)
    events.on("logout", after)

    await events.emit("logout")

    after.assert_called_once_with()


@pytest.mark.asyncio
async def test_listener_handle_removes_registration():
    events = AuthEvents()
    listener = Mock()
    handle = events.on("login", listener)

    assert handle() is True
    assert handle() is False
    await events.emit("login", Credentials(access_token="A"))

    listener.assert_not_called()
    assert events.count("login") == 0


def test_unknown_auth_event_is_rejected():
    with pytest.raises(ValueError):
        AuthEvents().on("signup", Mock())  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "data, expected",
    [
        (
            {"accessToken": "A", "refreshToken": "R", "expiresIn": 60},
            Credentials("A", "R", 60.0, None, "Bearer"),
        ),
        (
            {"access_token": "A", "token_type": "MAC"},
            Credentials("A", None, None, None, "MAC"),
        ),
        ({"refreshToken": "R"}, None),
        ("not a mapping", None),
    ],
)
def test_extract_credentials(data, expected):
    assert extract_credentials(data) == expected


def test_validate_credentials_collects_every_problem():
    errors = validate_credentials(
        Credentials(access_token="", expires_in=-1, expires_at=NOW - 1),
        now=NOW,
    )

    assert errors == [
        "Access token is required",
        "expires_in must be a positive number",
        "expires_at must be a future timestamp",
    ]
    assert validate_credentials(Credentials(access_token="A"), now=NOW) == []


@pytest.mark.parametrize(
    "expires_at, expected",
    [
        (None, "Unknown"),
        (NOW - 5, "Expired"),
        (NOW + 45, "45s"),
        (NOW + 125, "2m 5s"),
        (NOW + 2 * 3600 + 15 * 60, "2h 15m"),
    ],
)
def test_format_token_time_remaining(expires_at, expected):
    credentials = Credentials(access_token="A", expires_at=expires_at)

    assert format_token_time_remaining(credentials, now=NOW) == expected



@pytest.mark.asyncio
async def test_set_tokens_drops_stale_optional_fields():
    storage = MemoryStorage()
    manager = AuthManager(AuthConfig(), storage=storage, clock=FixedClock())
    await manager.set_tokens(
        Credentials(
            access_token="A", refresh_token="R", expires_in=60, token_type="Bearer"
        )
    )

    await manager.set_tokens(Credentials(access_token="B"))
    restored = AuthManager(AuthConfig(), storage=storage, clock=FixedClock())
    await restored.initialize()

    assert storage.get_item("authToken") == "B"
    assert storage.get_item("refreshToken") is None
    assert storage.get_item("authToken_expiresAt") is None
    assert storage.get_item("authToken_tokenType") is None
    assert restored.get_tokens() == Credentials(access_token="B")


@pytest.mark.asyncio
async def test_cancel_refresh_stops_the_request_in_flight():
    manager = _manager()
    await manager.set_tokens(Credentials(access_token="old", refresh_token="R"))
    started = asyncio.Event()
    finished = []

    async def refresh_fn(url, payload):
        started.set()
        await asyncio.sleep(10)
        finished.append(url)
        return {"accessToken": "new"}

    waiter = asyncio.ensure_future(manager.refresh_tokens(refresh_fn))
    await started.wait()

    await manager.cancel_refresh()

    assert not manager.is_refreshing
    assert finished == []
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert manager.get_tokens().access_token == "old"
