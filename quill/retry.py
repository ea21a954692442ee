from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, TypeVar

import httpx

from .constants import (
    DEFAULT_MAX_ATTEMPTS,
    LOGGER,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
)
from .errors import (
    ProtocolError,
    RefreshExhaustedError,
    RequestCancelledError,
    SessionError,
    TerminalAuthError,
    TransientNetworkError,
    is_terminal_status,
)

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    if isinstance(
        error,
        (TerminalAuthError, RefreshExhaustedError, RequestCancelledError, ProtocolError),
    ):
        return False
    if isinstance(error, SessionError) and error.status_code is not None:
        return not is_terminal_status(error.status_code)
    if isinstance(error, httpx.HTTPStatusError):
        return not is_terminal_status(error.response.status_code)
    return True


class RetryExecutor:
    def __init__(
        self,
        *,
        base_delay: float = RETRY_BASE_DELAY_SECONDS,
        max_delay: float = RETRY_MAX_DELAY_SECONDS,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self._logger = logger or LOGGER

    def delay_for(self, attempt: int) -> float:
        return min(self._base_delay * 2**attempt, self._max_delay)

    def _wait_seconds(self, error: Exception, attempt: int) -> float:
        retry_after = getattr(error, "retry_after", None)
        if isinstance(error, TransientNetworkError) and retry_after is not None:
            return min(retry_after, self._max_delay)
        return self.delay_for(attempt)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> T:
        max_attempts = max(1, max_attempts)
        attempt = 0

        while True:
            try:
                return await operation()
            except Exception as error:
                if not is_retryable(error):
                    self._logger.info("%s failed with terminal error: %s", name, error)
                    raise
                if attempt + 1 >= max_attempts:
                    self._logger.warning(
                        "%s failed after %s attempts: %s", name, max_attempts, error
                    )
                    raise

                wait_seconds = self._wait_seconds(error, attempt)
                self._logger.warning(
                    "Retrying %s after %ss (attempt %s/%s): %s",
                    name,
                    wait_seconds,
                    attempt + 1,
                    max_attempts,
                    error,
                )
                await self._sleep(wait_seconds)
                attempt += 1


def with_retry(
    executor: RetryExecutor,
    name: str | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
):
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        operation_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await executor.run(
                lambda: func(*args, **kwargs),
                operation_name,
                max_attempts=max_attempts,
            )

        return wrapper

    return decorator
