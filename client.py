from __future__ import annotations

import asyncio
import getpass
import os
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from auth.controller import AuthController
from auth.models import AuthState
from auth.refresh_scheduler import RefreshScheduler
from auth.token_store import FileTokenStorage, TokenStore
from quill.cancellation import CancellationRegistry
from quill.constants import APP_VERSION, LOGGER
from quill.env import SessionConfig, config_from_env, load_env, setup_logging, validate_env
from quill.errors import SessionError
from quill.http import HttpGateway
from quill.network import NetworkMonitor
from quill.offline_queue import OfflineQueue
from quill.retry import RetryExecutor

USAGE = """usage: python client.py <command> [args]

commands:
  status                    show the restored session
  login <email>             sign in (password from QUILL_PASSWORD or prompt)
  signup <email> <username> create an account (password as for login)
  anonymous                 start an anonymous session
  logout                    sign out and clear the stored session
"""


@dataclass
class ClientSession:
    config: SessionConfig
    controller: AuthController
    gateway: HttpGateway
    network: NetworkMonitor
    offline_queue: OfflineQueue
    http_client: httpx.AsyncClient

    async def start(self) -> AuthState:
        if self.config.connectivity_interval > 0:
            self.network.start_polling(
                build_connectivity_check(self.http_client),
                self.config.connectivity_interval,
            )
        return await self.controller.restore_session()

    async def aclose(self) -> None:
        await self.controller.aclose()
        await self.network.stop()
        await self.http_client.aclose()


def build_http_client(
    config: SessionConfig,
    *,
    debug_enabled: bool,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    async def log_request(request: httpx.Request) -> None:
        if not debug_enabled:
            return
        LOGGER.info("API request %s %s", request.method, request.url)

    async def log_response(response: httpx.Response) -> None:
        if not debug_enabled:
            return
        LOGGER.info(
            "API response %s %s -> %s",
            response.request.method,
            response.request.url,
            response.status_code,
        )
        if response.status_code >= 400:
            body = await response.aread()
            text = body.decode("utf-8", errors="replace")
            if len(text) > 1000:
                text = text[:1000] + "...<truncated>"
            LOGGER.warning("API error body: %s", text)

    return httpx.AsyncClient(
        base_url=config.api_url,
        headers={"User-Agent": f"quill-session/{APP_VERSION}"},
        timeout=config.timeout,
        transport=transport,
        event_hooks={"request": [log_request], "response": [log_response]},
    )


def build_connectivity_check(client: httpx.AsyncClient) -> Callable[[], Awaitable[bool]]:
    async def check() -> bool:
        # Any HTTP answer, even an error status, proves the server is reachable.
        try:
            response = await client.head("/")
        except httpx.TransportError:
            return False
        await response.aclose()
        return True

    return check


def create_session(
    config: SessionConfig | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    token_store: TokenStore | None = None,
    network: NetworkMonitor | None = None,
) -> ClientSession:
    if config is None:
        load_env()
        validate_env()
        config = config_from_env()
    debug_enabled = setup_logging(config)

    http_client = build_http_client(config, debug_enabled=debug_enabled, transport=transport)
    token_store = token_store or TokenStore(FileTokenStorage(config.token_store_path))
    network = network or NetworkMonitor(True)
    offline_queue = OfflineQueue()
    gateway = HttpGateway(
        http_client,
        token_store=token_store,
        network=network,
        cancellations=CancellationRegistry(),
        retry=RetryExecutor(),
        offline_queue=offline_queue,
        max_attempts=config.max_attempts,
    )
    offline_queue.watch(network)
    controller = AuthController(
        gateway,
        token_store,
        scheduler=RefreshScheduler(),
        offline_queue=offline_queue,
    )
    return ClientSession(
        config=config,
        controller=controller,
        gateway=gateway,
        network=network,
        offline_queue=offline_queue,
        http_client=http_client,
    )


def format_state(state: AuthState) -> str:
    if not state.is_authenticated or state.user is None:
        line = f"status: {state.status.value}"
    else:
        kind = "anonymous" if state.user.is_anonymous_account else "registered"
        line = (
            f"status: {state.status.value} user: {state.user.username} "
            f"<{state.user.email}> ({kind}, id={state.user.id})"
        )
    if state.error:
        line += f"\nerror: {state.error}"
    return line


def _read_password() -> str:
    return os.getenv("QUILL_PASSWORD") or getpass.getpass("Password: ")


async def run_command(command: str, args: list[str], session: ClientSession | None = None) -> int:
    arity = {"status": 0, "login": 1, "signup": 2, "anonymous": 0, "logout": 0}
    if command not in arity or len(args) < arity[command]:
        print(USAGE, file=sys.stderr)
        return 2

    session = session or create_session()
    controller = session.controller
    try:
        await session.start()
        if command == "login":
            await controller.sign_in(args[0], _read_password())
        elif command == "signup":
            await controller.sign_up(args[0], _read_password(), args[1])
        elif command == "anonymous":
            credentials = await controller.create_anonymous_session()
            if credentials is not None:
                print("Keep these credentials to resume this anonymous account later:")
                print(f"  email: {credentials.email}")
                print(f"  password: {credentials.password}")
        elif command == "logout":
            await controller.sign_out()
    except SessionError as error:
        print(f"error: {error.message}", file=sys.stderr)
        return 1
    finally:
        await session.aclose()

    print(format_state(controller.state))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    command = args[0] if args else "status"
    return asyncio.run(run_command(command, args[1:]))


if __name__ == "__main__":
    sys.exit(main())
