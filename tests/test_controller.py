import asyncio

import httpx
import pytest

from auth.models import AuthState, AuthStatus
from auth.token_store import MemoryTokenStorage
from quill.errors import RefreshExhaustedError, SessionError, TerminalAuthError
from tests.session_helpers import build_stack

EMAIL = "poet@example.com"
PASSWORD = "correct-horse"


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _persisted(server, access_token: str | None = None, refresh_token: str | None = None) -> MemoryTokenStorage:
    issued = server.issue_tokens("user-1")
    return MemoryTokenStorage(
        {
            "accessToken": access_token or issued["accessToken"],
            "refreshToken": refresh_token or issued["refreshToken"],
            "user": server.users["user-1"],
        }
    )


@pytest.mark.asyncio
async def test_sign_in_authenticates_and_schedules_refresh(stack) -> None:
    user = await stack.controller.sign_in(EMAIL, PASSWORD)

    state = stack.controller.state
    assert user.username == "poet"
    assert state.status is AuthStatus.AUTHENTICATED
    assert state.is_authenticated is True
    assert state.user == user
    assert state.is_signing_in is False
    assert stack.tokens.get_access() == "access-2"
    assert stack.tokens.get_refresh() == "refresh-2"
    assert stack.tokens.get_user() == user
    assert stack.scheduler.delay == 840.0


@pytest.mark.asyncio
async def test_wrong_password_fails_once_without_refresh(stack) -> None:
    with pytest.raises(TerminalAuthError, match="Invalid credentials"):
        await stack.controller.sign_in(EMAIL, "wrong")

    state = stack.controller.state
    assert stack.server.calls("POST", "/auth/login") == 1
    assert stack.server.calls("POST", "/auth/refresh") == 0
    assert state.status is AuthStatus.ERROR
    assert state.error == "Invalid credentials"
    assert state.is_signing_in is False
    assert stack.tokens.has_any() is False
    assert stack.retry_sleep.calls == []


@pytest.mark.asyncio
async def test_progress_flags_are_published(stack) -> None:
    states: list[AuthState] = []
    stack.controller.subscribe(states.append)

    await stack.controller.sign_in(EMAIL, PASSWORD)

    assert states[0].status is AuthStatus.AUTHENTICATING
    assert states[0].is_signing_in is True
    assert states[-1].is_signing_in is False
    assert states[-1].status is AuthStatus.AUTHENTICATED


@pytest.mark.asyncio
async def test_unsubscribed_listener_gets_nothing(stack) -> None:
    states: list[AuthState] = []
    unsubscribe = stack.controller.subscribe(states.append)
    unsubscribe()

    await stack.controller.sign_in(EMAIL, PASSWORD)

    assert states == []


@pytest.mark.asyncio
async def test_sign_up_and_duplicate(stack) -> None:
    user = await stack.controller.sign_up("new@example.com", "s3cret-verse", "newpoet")

    assert user.username == "newpoet"
    assert stack.controller.state.status is AuthStatus.AUTHENTICATED

    with pytest.raises(TerminalAuthError) as excinfo:
        await stack.controller.sign_up("new@example.com", "other", "again")

    assert excinfo.value.status_code == 409
    assert stack.server.calls("POST", "/auth/register") == 2
    assert stack.controller.state.error == "Username or email already exists"
    assert stack.controller.state.is_signing_up is False


@pytest.mark.asyncio
async def test_oauth_sign_in(stack) -> None:
    user = await stack.controller.sign_in_with_oauth_provider("google-id-token")

    assert user.username == "google_poet"
    assert stack.server.calls("POST", "/auth/google") == 1
    assert stack.controller.state.is_signing_in_with_oauth is False

    with pytest.raises(ValueError):
        await stack.controller.sign_in_with_oauth_provider("token", provider="../admin")


@pytest.mark.asyncio
async def test_anonymous_session_returns_credentials(stack) -> None:
    credentials = await stack.controller.create_anonymous_session()

    user = stack.controller.state.user
    assert credentials is not None
    assert credentials.email == user.email
    assert credentials.password == "generated"
    assert user.is_anonymous_account is True
    assert stack.controller.state.is_creating_anonymous is False


@pytest.mark.asyncio
async def test_sign_out_clears_everything(stack) -> None:
    await stack.controller.sign_in(EMAIL, PASSWORD)

    await stack.controller.sign_out()

    assert stack.server.calls("POST", "/auth/logout") == 1
    assert stack.server.requests[-1].headers["authorization"] == "Bearer access-2"
    assert stack.controller.state == AuthState()
    assert stack.tokens.has_any() is False
    assert stack.tokens.get_user() is None
    assert stack.scheduler.is_scheduled is False


@pytest.mark.asyncio
async def test_sign_out_succeeds_when_server_call_fails(stack) -> None:
    await stack.controller.sign_in(EMAIL, PASSWORD)
    stack.server.script("POST", "/auth/logout", httpx.ConnectError("connection reset"))

    await stack.controller.sign_out()

    assert stack.server.calls("POST", "/auth/logout") == 1
    assert stack.controller.state.status is AuthStatus.ANONYMOUS_VISITOR
    assert stack.tokens.has_any() is False


@pytest.mark.asyncio
async def test_sign_out_offline_skips_server(stack) -> None:
    await stack.controller.sign_in(EMAIL, PASSWORD)
    stack.network.set_online(False)

    await stack.controller.sign_out()

    assert stack.server.calls("POST", "/auth/logout") == 0
    assert stack.tokens.has_any() is False


@pytest.mark.asyncio
async def test_sign_in_then_current_user_needs_no_refresh(stack) -> None:
    signed_in = await stack.controller.sign_in(EMAIL, PASSWORD)

    user = await stack.controller.get_current_user()

    assert user == signed_in
    assert stack.server.calls("GET", "/auth/me") == 1
    assert stack.server.calls("POST", "/auth/refresh") == 0
    assert stack.controller.state.is_loading is False


@pytest.mark.asyncio
async def test_current_user_without_tokens(stack) -> None:
    assert await stack.controller.get_current_user() is None
    assert stack.server.requests == []


@pytest.mark.asyncio
async def test_current_user_offline_uses_cached_user(stack) -> None:
    signed_in = await stack.controller.sign_in(EMAIL, PASSWORD)
    stack.network.set_online(False)

    user = await stack.controller.get_current_user()

    assert user == signed_in
    assert stack.controller.state.status is AuthStatus.AUTHENTICATED
    assert stack.server.calls("GET", "/auth/me") == 0


@pytest.mark.asyncio
async def test_current_user_recovers_from_expired_access_token(stack) -> None:
    await stack.controller.sign_in(EMAIL, PASSWORD)
    stack.server.expire_access_tokens()

    user = await stack.controller.get_current_user()

    assert user.username == "poet"
    assert stack.server.calls("POST", "/auth/refresh") == 1
    assert stack.tokens.get_access() == "access-3"
    assert stack.tokens.get_refresh() == "refresh-3"


@pytest.mark.asyncio
async def test_offline_sign_in_waits_for_connectivity(offline_stack) -> None:
    pending = asyncio.ensure_future(offline_stack.controller.sign_in(EMAIL, PASSWORD))
    await _settle()

    assert offline_stack.controller.state.is_signing_in is True
    assert len(offline_stack.offline_queue) == 1
    assert offline_stack.server.requests == []

    offline_stack.network.set_online(True)
    user = await asyncio.wait_for(pending, timeout=1)

    assert user.username == "poet"
    assert offline_stack.controller.state.status is AuthStatus.AUTHENTICATED
    assert offline_stack.server.calls("POST", "/auth/login") == 1


@pytest.mark.asyncio
async def test_sign_out_rejects_queued_requests(offline_stack) -> None:
    offline_stack.tokens.set(access_token="access-x", refresh_token="refresh-x")
    pending = asyncio.ensure_future(
        offline_stack.gateway.request("POST", "/poems", json={"title": "Unsent"})
    )
    await _settle()

    await offline_stack.controller.sign_out()

    with pytest.raises(SessionError, match="Signed out"):
        await pending
    assert len(offline_stack.offline_queue) == 0


@pytest.mark.asyncio
async def test_concurrent_refresh_calls_share_one_request(stack) -> None:
    await stack.controller.sign_in(EMAIL, PASSWORD)

    first, second = await asyncio.gather(stack.controller.refresh(), stack.controller.refresh())

    assert first == second
    assert first.access_token == "access-3"
    assert stack.server.calls("POST", "/auth/refresh") == 1


@pytest.mark.asyncio
async def test_refresh_keeps_unrotated_refresh_token(stack) -> None:
    await stack.controller.sign_in(EMAIL, PASSWORD)
    stack.server.rotate_refresh = False

    pair = await stack.controller.refresh()

    assert pair.access_token == "access-3"
    assert pair.refresh_token == "refresh-2"
    assert stack.tokens.get_refresh() == "refresh-2"


@pytest.mark.asyncio
async def test_refresh_without_refresh_token_signs_out(stack) -> None:
    stack.tokens.set(access_token="access-only")

    with pytest.raises(RefreshExhaustedError):
        await stack.controller.refresh()

    assert stack.tokens.has_any() is False
    assert stack.server.calls("POST", "/auth/refresh") == 0
    assert stack.controller.state.error == "Your session has expired. Please sign in again."


@pytest.mark.asyncio
async def test_sign_out_during_refresh_is_not_undone(stack) -> None:
    await stack.controller.sign_in(EMAIL, PASSWORD)
    stack.server.hold_refresh_until = 10**6

    refreshing = asyncio.ensure_future(stack.controller.refresh())
    await _settle()
    await stack.controller.sign_out()
    stack.server.release_refresh()

    with pytest.raises(RefreshExhaustedError, match="ended while refreshing"):
        await refreshing
    assert stack.tokens.has_any() is False
    assert stack.controller.state.status is AuthStatus.ANONYMOUS_VISITOR


@pytest.mark.asyncio
async def test_scheduled_refresh_rotates_tokens(stack) -> None:
    await stack.controller.sign_in(EMAIL, PASSWORD)
    await _settle()

    await stack.timer.fire()

    assert stack.server.calls("POST", "/auth/refresh") == 1
    assert stack.tokens.get_access() == "access-3"
    assert stack.timer.delays == [840.0, 840.0]
    assert stack.scheduler.is_scheduled is True


@pytest.mark.asyncio
async def test_restore_session_validates_stored_tokens(auth_server) -> None:
    stack = build_stack(auth_server, storage=_persisted(auth_server))
    try:
        state = await stack.controller.restore_session()

        assert state.status is AuthStatus.AUTHENTICATED
        assert state.user.username == "poet"
        assert auth_server.calls("GET", "/auth/me") == 1
        assert stack.scheduler.is_scheduled is True
    finally:
        await stack.aclose()


@pytest.mark.asyncio
async def test_restore_session_refreshes_stale_access_token(auth_server) -> None:
    stack = build_stack(auth_server, storage=_persisted(auth_server, access_token="stale"))
    try:
        state = await stack.controller.restore_session()

        assert state.status is AuthStatus.AUTHENTICATED
        assert auth_server.calls("POST", "/auth/refresh") == 1
        assert stack.tokens.get_access() != "stale"
    finally:
        await stack.aclose()


@pytest.mark.asyncio
async def test_restore_session_with_revoked_tokens_signs_out(auth_server) -> None:
    storage = _persisted(auth_server, access_token="stale", refresh_token="revoked")
    stack = build_stack(auth_server, storage=storage)
    try:
        state = await stack.controller.restore_session()

        assert state.status is AuthStatus.ANONYMOUS_VISITOR
        assert state.error == "Your session has expired. Please sign in again."
        assert stack.tokens.has_any() is False
        assert storage.load() == {}
    finally:
        await stack.aclose()


@pytest.mark.asyncio
async def test_restore_session_offline_is_optimistic(auth_server) -> None:
    stack = build_stack(auth_server, online=False, storage=_persisted(auth_server))
    try:
        state = await stack.controller.restore_session()

        assert state.status is AuthStatus.AUTHENTICATED
        assert state.user.username == "poet"
        assert auth_server.requests == []
    finally:
        await stack.aclose()


@pytest.mark.asyncio
async def test_restore_session_keeps_state_when_server_is_down(auth_server) -> None:
    auth_server.script("GET", "/auth/me", 503, 503, 503)
    stack = build_stack(auth_server, storage=_persisted(auth_server))
    try:
        state = await stack.controller.restore_session()

        assert state.status is AuthStatus.AUTHENTICATED
        assert state.user.username == "poet"
        assert stack.tokens.has_any() is True
        assert stack.retry_sleep.calls == [1.0, 2.0]
    finally:
        await stack.aclose()


@pytest.mark.asyncio
async def test_restore_session_without_tokens(stack) -> None:
    state = await stack.controller.restore_session()

    assert state == AuthState()
    assert stack.server.requests == []


@pytest.mark.asyncio
async def test_clear_error_and_reset(stack) -> None:
    with pytest.raises(TerminalAuthError):
        await stack.controller.sign_in(EMAIL, "wrong")

    stack.controller.clear_error()
    assert stack.controller.state.error is None
    assert stack.controller.state.status is AuthStatus.ERROR

    stack.controller.reset_auth_state()
    assert stack.controller.state == AuthState()


@pytest.mark.asyncio
async def test_pending_sign_in_does_not_override_sign_out(offline_stack) -> None:
    pending = asyncio.ensure_future(offline_stack.controller.sign_in(EMAIL, PASSWORD))
    await _settle()

    await offline_stack.controller.sign_out()
    with pytest.raises(SessionError, match="Signed out"):
        await pending

    assert offline_stack.controller.state == AuthState()
    assert offline_stack.server.requests == []


@pytest.mark.asyncio
async def test_current_user_offline_without_cached_user(offline_stack) -> None:
    offline_stack.tokens.set(access_token="access-x", refresh_token="refresh-x")

    assert await offline_stack.controller.get_current_user() is None

    assert offline_stack.controller.state.status is AuthStatus.ANONYMOUS_VISITOR
    assert offline_stack.controller.state.user is None


@pytest.mark.asyncio
async def test_restore_session_without_cached_user_waits_for_server(auth_server) -> None:
    issued = auth_server.issue_tokens("user-1")
    storage = MemoryTokenStorage(
        {"accessToken": issued["accessToken"], "refreshToken": issued["refreshToken"]}
    )
    stack = build_stack(auth_server, storage=storage)
    states: list[AuthState] = []
    stack.controller.subscribe(states.append)
    try:
        state = await stack.controller.restore_session()

        assert all(s.user is not None for s in states if s.status is AuthStatus.AUTHENTICATED)
        assert state.status is AuthStatus.AUTHENTICATED
        assert state.user.username == "poet"
    finally:
        await stack.aclose()
