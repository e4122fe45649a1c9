"""Sensor service boundary: a stream of combined motion frames.

Native accelerometer/gyroscope callbacks arrive at whatever rate the platform
chooses. ``TickSampledSensorService`` hides that jitter by emitting the latest
raw values on a fixed timer tick (20 ms, ~50 Hz).
"""

from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Callable, Iterable, Protocol

import structlog

from roadsense.core.models import MotionFrame

log = structlog.get_logger()

TARGET_PERIOD_S = 0.02


def _now_ms() -> int:
    return int(time.time() * 1000)


class SensorService(Protocol):
    """Port: combined motion frames at a fixed nominal rate."""

    @property
    def is_running(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def frames(self) -> AsyncIterator[MotionFrame]: ...


class TickSampledSensorService:
    """Samples the latest native values every ``period_s`` seconds."""

    def __init__(self, period_s: float = TARGET_PERIOD_S,
                 clock: Callable[[], int] = _now_ms) -> None:
        self._period_s = period_s
        self._clock = clock
        self._running = False
        # Zeros until the first native event arrives.
        self._accel = (0.0, 0.0, 0.0)
        self._gyro = (0.0, 0.0, 0.0)

    @property
    def is_running(self) -> bool:
        return self._running

    def on_accelerometer(self, x: float, y: float, z: float) -> None:
        self._accel = (x, y, z)

    def on_gyroscope(self, x: float, y: float, z: float) -> None:
        self._gyro = (x, y, z)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        log.info("sensor_service_started", period_ms=round(self._period_s * 1000))

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        log.info("sensor_service_stopped")

    def sample(self) -> MotionFrame:
        ax, ay, az = self._accel
        gx, gy, gz = self._gyro
        return MotionFrame(timestamp_ms=self._clock(), ax=ax, ay=ay, az=az, gx=gx, gy=gy, gz=gz)

    async def frames(self) -> AsyncIterator[MotionFrame]:
        while self._running:
            await asyncio.sleep(self._period_s)
            if not self._running:
                break
            yield self.sample()


class ReplaySensorService:
    """Replays recorded frames, e.g. from a log file or the simulator.

    With ``realtime=True`` the gaps between frame timestamps are honoured;
    otherwise frames are yielded back-to-back.
    """

    def __init__(self, frames: Iterable[MotionFrame], realtime: bool = False) -> None:
        self._frames = list(frames)
        self._realtime = realtime
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def frames(self) -> AsyncIterator[MotionFrame]:
        prev_ms: int | None = None
        for frame in self._frames:
            if not self._running:
                break
            if self._realtime and prev_ms is not None:
                await asyncio.sleep(max(frame.timestamp_ms - prev_ms, 0) / 1000)
            else:
                await asyncio.sleep(0)
            prev_ms = frame.timestamp_ms
            yield frame
