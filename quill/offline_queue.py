from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from .constants import LOGGER
from .network import NetworkMonitor

ReplayFn = Callable[["PendingRequest"], Awaitable[httpx.Response]]


@dataclass
class PendingRequest:
    method: str
    url: str
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    authenticated: bool = True
    created_at: float = field(default_factory=time.time)
    future: asyncio.Future = field(default=None, repr=False)  # type: ignore[assignment]


def _abandon_replay(replay: asyncio.Future, future: asyncio.Future) -> None:
    if future.cancelled():
        replay.cancel()


class OfflineQueue:
    """Deferred mutating requests, replayed one at a time in FIFO order.

    Each entry gets a single replay attempt; a failed replay rejects the
    caller's future and is not enqueued again.
    """

    def __init__(self, replay: ReplayFn | None = None, *, logger: logging.Logger | None = None) -> None:
        self.replay_handler = replay
        self._entries: deque[PendingRequest] = deque()
        self._draining = False
        self._logger = logger or LOGGER

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def enqueue(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
        *,
        authenticated: bool = True,
    ) -> httpx.Response:
        entry = PendingRequest(
            method=method.upper(),
            url=url,
            body=body,
            headers=dict(headers or {}),
            authenticated=authenticated,
            future=asyncio.get_running_loop().create_future(),
        )
        self._entries.append(entry)
        self._logger.info(
            "Queued offline request %s %s (%s pending)", entry.method, url, len(self._entries)
        )
        return await entry.future

    async def drain(self) -> None:
        if self._draining:
            return
        if self.replay_handler is None:
            raise RuntimeError("OfflineQueue has no replay handler.")

        self._draining = True
        try:
            while self._entries:
                entry = self._entries.popleft()
                if entry.future.done():
                    continue

                self._logger.info("Replaying offline request %s %s", entry.method, entry.url)
                replay = asyncio.ensure_future(self.replay_handler(entry))
                entry.future.add_done_callback(functools.partial(_abandon_replay, replay))
                try:
                    response = await replay
                except asyncio.CancelledError:
                    if not entry.future.cancelled():
                        raise
                    self._logger.info(
                        "Offline request %s %s was cancelled during replay", entry.method, entry.url
                    )
                    continue
                except Exception as error:
                    self._logger.warning(
                        "Offline replay failed %s %s: %s", entry.method, entry.url, error
                    )
                    if not entry.future.done():
                        entry.future.set_exception(error)
                    continue

                if not entry.future.done():
                    entry.future.set_result(response)
        finally:
            self._draining = False

    def watch(self, network: NetworkMonitor) -> Callable[[], None]:
        async def on_change(online: bool) -> None:
            if online:
                await self.drain()

        return network.on_change(on_change)

    def reject_all(self, error: BaseException) -> int:
        rejected = 0
        while self._entries:
            entry = self._entries.popleft()
            if not entry.future.done():
                entry.future.set_exception(error)
                rejected += 1
        return rejected
