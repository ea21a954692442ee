from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Callable

import httpx

from auth.auth_api import (
    ANONYMOUS_PATH,
    LOGIN_PATH,
    LOGOUT_PATH,
    ME_PATH,
    REFRESH_PATH,
    REGISTER_PATH,
    AuthResponse,
    RefreshResponse,
    oauth_path,
    parse_user,
)
from auth.models import AnonymousCredentials, AuthState, AuthStatus, TokenPair, User
from auth.refresh_scheduler import RefreshScheduler
from auth.token_store import TokenStore
from quill.constants import LOGGER
from quill.errors import (
    ProtocolError,
    RefreshExhaustedError,
    SessionError,
    TerminalAuthError,
    TransientNetworkError,
)
from quill.http import HttpGateway
from quill.offline_queue import OfflineQueue

StateListener = Callable[[AuthState], object]


def _json(response: httpx.Response):
    try:
        return response.json()
    except ValueError as error:
        raise ProtocolError(
            f"Expected a JSON body from {response.request.method} {response.request.url}."
        ) from error


class AuthController:
    """Authentication state machine for the application.

    Publishes ``AuthState`` snapshots to subscribers and owns the one refresh
    primitive shared by the gateway (401 recovery) and the refresh timer.
    """

    def __init__(
        self,
        gateway: HttpGateway,
        token_store: TokenStore,
        *,
        scheduler: RefreshScheduler | None = None,
        offline_queue: OfflineQueue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._gateway = gateway
        self._tokens = token_store
        self._network = gateway.network
        self._scheduler = scheduler or RefreshScheduler()
        self._offline_queue = offline_queue
        self._logger = logger or LOGGER

        self._state = AuthState()
        self._listeners: list[StateListener] = []
        self._refresh_task: asyncio.Task | None = None
        # Bumped whenever the local session is wiped, so a refresh that
        # started before a sign-out cannot write its tokens back.
        self._generation = 0

        self._scheduler.refresh_handler = self.refresh
        self._gateway.refresh_handler = self.refresh

    # -- published state -------------------------------------------------------

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def scheduler(self) -> RefreshScheduler:
        return self._scheduler

    @property
    def token_store(self) -> TokenStore:
        return self._tokens

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, state: AuthState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                self._logger.exception("Auth state listener %r failed", listener)

    def _set_state(self, **changes) -> None:
        self._publish(replace(self._state, **changes))

    def clear_error(self) -> None:
        self._set_state(error=None)

    def reset_auth_state(self) -> None:
        self._publish(AuthState())

    # -- sign-in flows ---------------------------------------------------------

    async def _authenticate(
        self,
        flag: str,
        call: Callable[[], Awaitable[httpx.Response]],
    ) -> AuthResponse:
        previous_status = self._state.status
        generation = self._generation
        self._set_state(status=AuthStatus.AUTHENTICATING, error=None, **{flag: True})

        try:
            response = await call()
            result = AuthResponse.from_payload(_json(response))
        except BaseException as error:
            if generation != self._generation:
                # The session was cleared while this call was pending.
                self._set_state(**{flag: False})
            elif isinstance(error, SessionError):
                self._set_state(status=AuthStatus.ERROR, error=error.message, **{flag: False})
            else:
                self._set_state(status=previous_status, **{flag: False})
            raise

        self._tokens.set(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            user=result.user,
        )
        self._set_state(
            status=AuthStatus.AUTHENTICATED,
            user=result.user,
            error=None,
            **{flag: False},
        )
        self._scheduler.schedule(result.expires_in)
        self._logger.info("Authenticated as %s (%s)", result.user.username, result.user.id)
        return result

    async def sign_up(self, email: str, password: str, username: str) -> User:
        result = await self._authenticate(
            "is_signing_up",
            lambda: self._gateway.request(
                "POST",
                REGISTER_PATH,
                json={"email": email, "password": password, "username": username},
                authenticated=False,
            ),
        )
        return result.user

    async def sign_in(self, email: str, password: str) -> User:
        # Offline, the gateway defers this POST until connectivity returns.
        result = await self._authenticate(
            "is_signing_in",
            lambda: self._gateway.request(
                "POST",
                LOGIN_PATH,
                json={"email": email, "password": password},
                authenticated=False,
            ),
        )
        return result.user

    async def sign_in_with_oauth_provider(self, id_token: str, provider: str = "google") -> User:
        path = oauth_path(provider)
        result = await self._authenticate(
            "is_signing_in_with_oauth",
            lambda: self._gateway.request(
                "POST",
                path,
                json={"idToken": id_token},
                authenticated=False,
            ),
        )
        return result.user

    async def create_anonymous_session(self) -> AnonymousCredentials | None:
        """Start an anonymous session.

        Returns the one-time credentials generated by the server, if any. They
        are not stored here; the caller must hand them to the user so the
        anonymous account can be resumed later.
        """
        result = await self._authenticate(
            "is_creating_anonymous",
            lambda: self._gateway.request(
                "POST",
                ANONYMOUS_PATH,
                json={},
                authenticated=False,
            ),
        )
        return result.generated_credentials

    # -- sign-out ----------------------------------------------------------------

    def _clear_session(self, error: str | None = None) -> None:
        self._generation += 1
        self._scheduler.cancel()
        self._tokens.clear()
        if self._offline_queue is not None:
            rejected = self._offline_queue.reject_all(
                SessionError("Signed out before the request could be sent.")
            )
            if rejected:
                self._logger.info("Dropped %s queued requests on sign-out", rejected)
        self._publish(AuthState(error=error))

    async def sign_out(self) -> None:
        self._set_state(is_loading=True)
        try:
            if self._network.is_online() and self._tokens.get_access() is not None:
                try:
                    await self._gateway.request(
                        "POST",
                        LOGOUT_PATH,
                        retry=False,
                        queue_when_offline=False,
                        refresh_on_unauthorized=False,
                    )
                except Exception as error:
                    self._logger.warning(
                        "Server sign-out failed; clearing local session anyway: %s", error
                    )
        finally:
            self._clear_session()
            self._logger.info("Signed out")

    # -- token refresh -----------------------------------------------------------

    async def refresh(self) -> TokenPair:
        if self._refresh_task is None:
            task = asyncio.ensure_future(self._perform_refresh())
            task.add_done_callback(self._refresh_done)
            self._refresh_task = task
        # Shielded: a cancelled waiter must not cancel the refresh others await.
        return await asyncio.shield(self._refresh_task)

    def _refresh_done(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled() and task.exception() is not None:
            self._logger.debug("Refresh finished with error: %s", task.exception())

    async def _perform_refresh(self) -> TokenPair:
        generation = self._generation
        refresh_token = self._tokens.get_refresh()
        if refresh_token is None:
            error = RefreshExhaustedError()
            self._clear_session(error.message)
            raise error

        self._logger.info("Refreshing access token")
        try:
            response = await self._gateway.request(
                "POST",
                REFRESH_PATH,
                json={"refreshToken": refresh_token},
                authenticated=False,
                queue_when_offline=False,
            )
            result = RefreshResponse.from_payload(_json(response))
        except (TerminalAuthError, ProtocolError) as error:
            self._logger.warning("Refresh token rejected; signing out: %s", error)
            exhausted = RefreshExhaustedError()
            if generation == self._generation:
                self._clear_session(exhausted.message)
            raise exhausted from error

        if generation != self._generation:
            raise RefreshExhaustedError("The session ended while refreshing.")

        pair = self._tokens.set(
            access_token=result.access_token,
            refresh_token=result.refresh_token or refresh_token,
        )
        self._scheduler.schedule(result.expires_in)
        return pair

    # -- current user ------------------------------------------------------------

    async def get_current_user(self) -> User | None:
        if not self._tokens.has_any():
            return None

        if not self._network.is_online():
            # Offline reads trust the stored session.
            user = self._state.user or self._tokens.get_user()
            if user is None:
                self._logger.info("Offline with no stored user; session left unverified")
                return None
            self._set_state(status=AuthStatus.AUTHENTICATED, user=user)
            self._logger.info("Offline; reporting stored session as authenticated")
            return user

        self._set_state(is_loading=True)
        try:
            response = await self._gateway.request("GET", ME_PATH)
            user = parse_user(_json(response))
        except TerminalAuthError as error:
            if error.status_code == 401:
                if self._tokens.has_any():
                    self._clear_session(error.message)
            else:
                self._set_state(error=error.message)
            raise
        except SessionError as error:
            self._set_state(error=error.message)
            raise
        finally:
            if self._state.is_loading:
                self._set_state(is_loading=False)

        self._tokens.set(user=user)
        self._set_state(status=AuthStatus.AUTHENTICATED, user=user, error=None)
        return user

    async def restore_session(self) -> AuthState:
        """Resume a persisted session at startup.

        The stored user is published right away, then validated against the
        server. Network trouble keeps the optimistic state; a rejection gets
        one refresh attempt before the session is dropped.
        """
        if not self._tokens.has_any():
            self._publish(AuthState())
            return self._state

        cached_user = self._tokens.get_user()
        if cached_user is not None:
            self._set_state(status=AuthStatus.AUTHENTICATED, user=cached_user, error=None)
        self._scheduler.schedule()

        try:
            await self.get_current_user()
        except TransientNetworkError as error:
            self._logger.warning("Could not validate restored session: %s", error)
        except SessionError as error:
            if not self._tokens.has_any():
                return self._state
            self._logger.warning("Restored session rejected, refreshing: %s", error)
            try:
                await self.refresh()
                await self.get_current_user()
            except SessionError as refresh_error:
                self._logger.warning("Could not recover restored session: %s", refresh_error)
                self._clear_session()
        return self._state

    async def aclose(self) -> None:
        self._scheduler.cancel()
        self._gateway.cancel_all()
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, SessionError):
                pass
