"""Storage interface (port) for detection records and verified potholes."""

from __future__ import annotations

from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from roadsense.core.models import DetectionRecord, VerifiedPothole


class DetectionStorage(Protocol):
    """Port: append-only detection log plus the verified-pothole dataset."""

    async def append(self, record: DetectionRecord) -> None: ...

    async def get(self, record_id: int) -> DetectionRecord | None: ...

    async def query_cell(self, cell_key: str) -> list[DetectionRecord]: ...

    async def set_cell_key(self, record_id: int, cell_key: str) -> bool: ...

    async def get_verified(self, cell_key: str) -> VerifiedPothole | None: ...

    async def upsert_verified(self, pothole: VerifiedPothole) -> None: ...

    async def list_verified(self) -> list[VerifiedPothole]: ...

    def last_record_id(self) -> int: ...
