"""In-process asyncio queue implementation of DetectionQueue."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from roadsense.core.models import DetectionRecord


class AsyncioDetectionQueue:
    """DetectionQueue backed by asyncio.Queue. Zero dependencies."""

    def __init__(self, max_size: int = 10_000) -> None:
        self._queue: asyncio.Queue[DetectionRecord] = asyncio.Queue(maxsize=max_size)

    async def put(self, record: DetectionRecord) -> None:
        await self._queue.put(record)

    async def get(self) -> DetectionRecord:
        return await self._queue.get()

    def get_nowait(self) -> DetectionRecord | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()
