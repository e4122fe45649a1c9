"""Location service boundary.

GPS is enrichment only. Every implementation must be allowed to emit nothing
at all; detection keeps working without a single fix.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Iterable, Protocol

from roadsense.core.models import LocationFix


class LocationService(Protocol):
    """Port: asynchronous location fixes plus a point query."""

    @property
    def is_running(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def fixes(self) -> AsyncIterator[LocationFix]: ...

    async def current_fix(self) -> LocationFix | None: ...


class NullLocationService:
    """No provider available: never emits a fix."""

    def __init__(self) -> None:
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def fixes(self) -> AsyncIterator[LocationFix]:
        return
        yield  # pragma: no cover

    async def current_fix(self) -> LocationFix | None:
        return None


class ReplayLocationService:
    """Replays a recorded list of fixes in order."""

    def __init__(self, fixes: Iterable[LocationFix], interval_s: float = 0.0) -> None:
        self._fixes = list(fixes)
        self._interval_s = interval_s
        self._running = False
        self._current: LocationFix | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def fixes(self) -> AsyncIterator[LocationFix]:
        for fix in self._fixes:
            if not self._running:
                break
            await asyncio.sleep(self._interval_s)
            self._current = fix
            yield fix

    async def current_fix(self) -> LocationFix | None:
        return self._current
