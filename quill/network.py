from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable

from .constants import LOGGER

ConnectivityListener = Callable[[bool], object]


class NetworkMonitor:
    """Online/offline signal with one event per transition.

    ``initial`` is the platform's connectivity signal at construction time,
    either a plain bool or a zero-argument callable that reads it.
    """

    def __init__(
        self,
        initial: bool | Callable[[], bool] = True,
        *,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._online = bool(initial() if callable(initial) else initial)
        self._listeners: list[ConnectivityListener] = []
        self._pending: set[asyncio.Task] = set()
        self._poll_task: asyncio.Task | None = None
        self._sleep = sleep
        self._logger = logger or LOGGER

    def is_online(self) -> bool:
        return self._online

    def on_change(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        self._logger.info("Connectivity changed: %s", "online" if online else "offline")

        for listener in list(self._listeners):
            try:
                result = listener(online)
            except Exception:
                self._logger.exception("Connectivity listener %r failed", listener)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.error("Connectivity listener task failed: %s", error)

    def start_polling(self, check: Callable[[], Awaitable[bool]], interval: float) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll(check, interval))

    async def _poll(self, check: Callable[[], Awaitable[bool]], interval: float) -> None:
        while True:
            try:
                online = await check()
            except Exception as error:
                self._logger.warning("Connectivity check failed: %s", error)
                online = False
            self.set_online(online)
            await self._sleep(interval)

    async def stop(self) -> None:
        tasks = list(self._pending)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
            self._poll_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                self._logger.exception("Connectivity task failed during shutdown")
