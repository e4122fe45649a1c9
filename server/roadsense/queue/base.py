"""Queue interface (port) for detection record ingestion."""

from __future__ import annotations

from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from roadsense.core.models import DetectionRecord


class DetectionQueue(Protocol):
    """Port: accepts detection records and delivers them to the storage consumer."""

    async def put(self, record: DetectionRecord) -> None: ...

    async def get(self) -> DetectionRecord: ...

    def get_nowait(self) -> DetectionRecord | None: ...

    def qsize(self) -> int: ...
