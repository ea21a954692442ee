from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field


@dataclass
class CancellationHandle:
    request_id: str
    created_at: float
    cancelled: bool = False
    _task: asyncio.Future | None = field(default=None, repr=False, compare=False)

    def attach(self, task: asyncio.Future) -> None:
        self._task = task
        if self.cancelled:
            task.cancel()

    def cancel(self) -> bool:
        if self.cancelled:
            return False
        self.cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True


class CancellationRegistry:
    def __init__(self) -> None:
        self._handles: dict[str, CancellationHandle] = {}

    def register(self) -> CancellationHandle:
        request_id = str(uuid.uuid4())
        while request_id in self._handles:
            request_id = str(uuid.uuid4())
        handle = CancellationHandle(request_id=request_id, created_at=time.time())
        self._handles[request_id] = handle
        return handle

    def get(self, request_id: str) -> CancellationHandle | None:
        return self._handles.get(request_id)

    def release(self, request_id: str) -> None:
        self._handles.pop(request_id, None)

    def cancel(self, request_id: str) -> bool:
        handle = self._handles.get(request_id)
        if handle is None:
            return False
        return handle.cancel()

    def cancel_all(self) -> int:
        return sum(1 for handle in list(self._handles.values()) if handle.cancel())

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)
