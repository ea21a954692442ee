from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from quill.constants import (
    LOGGER,
    REFRESH_DEFAULT_INTERVAL_SECONDS,
    REFRESH_LEAD_SECONDS,
    REFRESH_MIN_DELAY_SECONDS,
    REFRESH_RETRY_SECONDS,
)
from quill.errors import RefreshExhaustedError


class RefreshScheduler:
    """Owns the single proactive refresh timer.

    A successful refresh is expected to call ``schedule`` again with the new
    expiry; this class only re-arms itself after a failed attempt.
    """

    def __init__(
        self,
        refresh_handler: Callable[[], Awaitable[Any]] | None = None,
        *,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.refresh_handler = refresh_handler
        self._sleep = sleep
        self._logger = logger or LOGGER
        self._task: asyncio.Task | None = None
        self._delay: float | None = None

    @staticmethod
    def delay_for(expires_in: float | None) -> float:
        if expires_in is None:
            return REFRESH_DEFAULT_INTERVAL_SECONDS
        return max(expires_in - REFRESH_LEAD_SECONDS, REFRESH_MIN_DELAY_SECONDS)

    @property
    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def delay(self) -> float | None:
        return self._delay if self.is_scheduled else None

    def schedule(self, expires_in: float | None = None) -> float:
        return self._arm(self.delay_for(expires_in))

    def _arm(self, delay: float) -> float:
        self.cancel()
        self._delay = delay
        self._task = asyncio.get_running_loop().create_task(self._fire_after(delay))
        self._logger.info("Token refresh scheduled in %ss", delay)
        return delay

    def cancel(self) -> None:
        task, self._task = self._task, None
        self._delay = None
        if task is not None and not task.done():
            task.cancel()

    async def _fire_after(self, delay: float) -> None:
        await self._sleep(delay)
        # Detach before refreshing so a reschedule from the handler does not cancel us.
        self._task = None
        self._delay = None

        if self.refresh_handler is None:
            self._logger.warning("Refresh timer fired without a refresh handler")
            return

        try:
            await self.refresh_handler()
        except RefreshExhaustedError as error:
            self._logger.warning("Scheduled refresh rejected; timer stopped: %s", error)
        except Exception as error:
            self._logger.warning(
                "Scheduled refresh failed; retrying in %ss: %s", REFRESH_RETRY_SECONDS, error
            )
            if self._task is None:
                self._arm(REFRESH_RETRY_SECONDS)
