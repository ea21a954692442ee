from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable

import httpx

from .cancellation import CancellationHandle, CancellationRegistry
from .constants import DEFAULT_MAX_ATTEMPTS, LOGGER, MUTATING_METHODS
from .errors import (
    RefreshExhaustedError,
    RequestCancelledError,
    TerminalAuthError,
    TransientNetworkError,
    UNREACHABLE_MESSAGE,
    error_from_response,
)
from .network import NetworkMonitor
from .offline_queue import OfflineQueue, PendingRequest
from .retry import RetryExecutor

# Marks a request that was already resent after a token refresh.
RESENT_EXTENSION = "quill_resent"
BEARER_EXTENSION = "quill_bearer"
SENT_TOKEN_EXTENSION = "quill_sent_token"

RefreshHandler = Callable[[], Awaitable[Any]]


class InFlightRequest:
    def __init__(self, handle: CancellationHandle, task: asyncio.Task) -> None:
        self._handle = handle
        self._task = task

    @property
    def request_id(self) -> str:
        return self._handle.request_id

    def cancel(self) -> bool:
        return self._handle.cancel()

    def done(self) -> bool:
        return self._task.done()

    async def _result(self) -> httpx.Response:
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._handle.cancelled:
                raise RequestCancelledError(self.request_id) from None
            raise

    def __await__(self):
        return self._result().__await__()


class HttpGateway:
    """Single chokepoint for authenticated calls to the API.

    Attaches the bearer token, registers every call for cancellation, and on
    a 401 asks the refresh handler for new tokens and resends the call once.
    The refresh handler is expected to be single-flight.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        token_store,
        network: NetworkMonitor | None = None,
        cancellations: CancellationRegistry | None = None,
        retry: RetryExecutor | None = None,
        offline_queue: OfflineQueue | None = None,
        refresh_handler: RefreshHandler | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._tokens = token_store
        self._network = network or NetworkMonitor(True)
        self._cancellations = cancellations or CancellationRegistry()
        self._retry = retry or RetryExecutor()
        self._offline_queue = offline_queue
        self._max_attempts = max_attempts
        self._logger = logger or LOGGER
        self.refresh_handler = refresh_handler

        if offline_queue is not None and offline_queue.replay_handler is None:
            offline_queue.replay_handler = self._replay

    @property
    def network(self) -> NetworkMonitor:
        return self._network

    @property
    def cancellations(self) -> CancellationRegistry:
        return self._cancellations

    def submit(self, method: str, path: str, **options) -> InFlightRequest:
        handle = self._cancellations.register()
        task = asyncio.ensure_future(self._run(handle, method.upper(), path, **options))
        task.add_done_callback(lambda _: self._cancellations.release(handle.request_id))
        handle.attach(task)
        return InFlightRequest(handle, task)

    async def request(self, method: str, path: str, **options) -> httpx.Response:
        return await self.submit(method, path, **options)

    def cancel(self, request_id: str) -> bool:
        return self._cancellations.cancel(request_id)

    def cancel_all(self) -> int:
        return self._cancellations.cancel_all()

    async def _run(
        self,
        handle: CancellationHandle,
        method: str,
        path: str,
        *,
        json: Any = None,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
        retry: bool = True,
        max_attempts: int | None = None,
        queue_when_offline: bool = True,
        refresh_on_unauthorized: bool = True,
    ) -> httpx.Response:
        try:
            if not self._network.is_online():
                if (
                    queue_when_offline
                    and self._offline_queue is not None
                    and method.lower() in MUTATING_METHODS
                ):
                    return await self._offline_queue.enqueue(
                        method, path, json, headers, authenticated=authenticated
                    )
                raise TransientNetworkError(UNREACHABLE_MESSAGE)

            send = functools.partial(
                self._dispatch,
                method,
                path,
                json=json,
                headers=headers,
                authenticated=authenticated,
                refresh_on_unauthorized=refresh_on_unauthorized,
            )
            if not retry:
                return await send()
            return await self._retry.run(
                send,
                f"{method} {path}",
                max_attempts=max_attempts or self._max_attempts,
            )
        except asyncio.CancelledError:
            if handle.cancelled:
                self._logger.info("Cancelled request %s (%s %s)", handle.request_id, method, path)
            raise

    async def _replay(self, entry: PendingRequest) -> httpx.Response:
        return await self._dispatch(
            entry.method,
            entry.url,
            json=entry.body,
            headers=entry.headers,
            authenticated=entry.authenticated,
        )

    def _build_request(
        self,
        method: str,
        path: str,
        *,
        json: Any,
        headers: dict[str, str] | None,
        authenticated: bool,
    ) -> httpx.Request:
        request = self._client.build_request(method, path, json=json, headers=headers)
        request.extensions[BEARER_EXTENSION] = False
        request.extensions[SENT_TOKEN_EXTENSION] = None
        if authenticated and "authorization" not in request.headers:
            access_token = self._tokens.get_access()
            if access_token is not None:
                request.headers["Authorization"] = f"Bearer {access_token}"
            request.extensions[BEARER_EXTENSION] = True
            request.extensions[SENT_TOKEN_EXTENSION] = access_token
        return request

    async def _send(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self._client.send(request)
        except httpx.TimeoutException as error:
            self._logger.warning("Request timed out (%s %s)", request.method, request.url)
            raise TransientNetworkError(UNREACHABLE_MESSAGE) from error
        except httpx.TransportError as error:
            self._logger.warning(
                "Network error (%s %s): %s", request.method, request.url, error
            )
            raise TransientNetworkError(UNREACHABLE_MESSAGE) from error

    def _should_refresh(self, request: httpx.Request, response: httpx.Response) -> bool:
        return (
            response.status_code == 401
            and self.refresh_handler is not None
            and request.extensions.get(BEARER_EXTENSION, False)
            and not request.extensions.get(RESENT_EXTENSION, False)
            and self._tokens.has_any()
        )

    async def _dispatch(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
        refresh_on_unauthorized: bool = True,
    ) -> httpx.Response:
        request = self._build_request(
            method, path, json=json, headers=headers, authenticated=authenticated
        )
        response = await self._send(request)

        if refresh_on_unauthorized and self._should_refresh(request, response):
            unauthorized = error_from_response(response)
            await response.aclose()
            sent_token = request.extensions[SENT_TOKEN_EXTENSION]
            current_token = self._tokens.get_access()
            if current_token is not None and current_token != sent_token:
                # Another request already rotated the token this one was sent with.
                self._logger.info("Got 401 for %s %s with a stale token; resending", method, path)
            else:
                self._logger.info("Got 401 for %s %s; refreshing session", method, path)
                try:
                    await self.refresh_handler()
                except (TerminalAuthError, RefreshExhaustedError) as error:
                    raise unauthorized from error

            request = self._build_request(
                method, path, json=json, headers=headers, authenticated=authenticated
            )
            request.extensions[RESENT_EXTENSION] = True
            response = await self._send(request)

        if response.status_code >= 400:
            error = error_from_response(response)
            await response.aclose()
            raise error
        return response
