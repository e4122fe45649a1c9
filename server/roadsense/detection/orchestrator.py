"""Detection orchestrator: wires sensors, location and upload around an engine.

Contains no detection math. It feeds every motion frame to the active engine
together with whatever location fix is current, attaches the latest fix to
positive events, and hands them to the upload service without waiting for
the upload to finish.
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

import structlog

from roadsense.detection.detector import (
    DetectionEngine,
    DetectorMode,
    RefinementDetector,
    RuleBasedDetector,
)

if TYPE_CHECKING:
    from roadsense.core.models import LocationFix, MotionFrame, PotholeEvent
    from roadsense.device.location import LocationService
    from roadsense.device.sensors import SensorService
    from roadsense.device.upload import UploadService

log = structlog.get_logger()

T = TypeVar("T")


class LatestValue(Generic[T]):
    """Single slot holding the most recent value. Last writer wins."""

    def __init__(self) -> None:
        self._value: T | None = None

    def set(self, value: T) -> None:
        self._value = value

    def get(self) -> T | None:
        return self._value

    def clear(self) -> None:
        self._value = None


@dataclass(frozen=True)
class DetectionState:
    is_detecting: bool = False
    gps_ready: bool = False
    last_frame: MotionFrame | None = None
    last_event: PotholeEvent | None = None
    frames_processed: int = 0
    events_detected: int = 0


class DetectionOrchestrator:
    """Owns exactly one rule detector for one detection session."""

    def __init__(
        self,
        sensors: SensorService,
        location: LocationService,
        uploader: UploadService,
        detector: RuleBasedDetector | None = None,
        mode: DetectorMode = DetectorMode.RULE_ONLY,
    ) -> None:
        self._sensors = sensors
        self._location = location
        self._uploader = uploader
        self._rule = detector or RuleBasedDetector()
        self._refined = RefinementDetector(base=self._rule)
        self._mode = DetectorMode(mode)

        self._last_fix: LatestValue[LocationFix] = LatestValue()
        self._state = DetectionState()
        self._motion_task: asyncio.Task | None = None
        self._fix_task: asyncio.Task | None = None
        self._uploads: set[asyncio.Task] = set()

    @property
    def mode(self) -> DetectorMode:
        return self._mode

    def set_mode(self, mode: DetectorMode) -> None:
        self._mode = DetectorMode(mode)

    @property
    def state(self) -> DetectionState:
        return self._state

    @property
    def last_known_fix(self) -> LocationFix | None:
        return self._last_fix.get()

    @property
    def pending_uploads(self) -> int:
        return len(self._uploads)

    def _active_engine(self) -> DetectionEngine:
        if self._mode is DetectorMode.RULE_PLUS_REFINEMENT:
            return self._refined
        return self._rule

    # -- per-sample entry points --------------------------------------------

    def handle_fix(self, fix: LocationFix) -> None:
        self._last_fix.set(fix)
        if not self._state.gps_ready:
            self._state = dataclasses.replace(self._state, gps_ready=True)

    def handle_frame(self, frame: MotionFrame) -> PotholeEvent | None:
        """Run one frame through the active engine. Must be called from the event loop."""
        event = self._active_engine().evaluate(frame, self._last_fix.get())

        # Best-effort enrichment: attach the freshest fix, never wait for one.
        fix = self._last_fix.get()
        if event is not None and fix is not None:
            event = dataclasses.replace(event, latitude=fix.latitude, longitude=fix.longitude)

        self._state = dataclasses.replace(
            self._state,
            last_frame=frame,
            last_event=event or self._state.last_event,
            frames_processed=self._state.frames_processed + 1,
            events_detected=self._state.events_detected + int(event is not None),
        )

        if event is not None:
            log.info("pothole_detected", severity=event.severity.label,
                     confidence=round(event.confidence, 3),
                     located=event.has_location)
            self._dispatch(event)
        return event

    def _dispatch(self, event: PotholeEvent) -> None:
        task = asyncio.create_task(self._upload(event))
        self._uploads.add(task)
        task.add_done_callback(self._uploads.discard)

    async def _upload(self, event: PotholeEvent) -> None:
        try:
            await self._uploader.upload(event)
        except Exception:
            log.error("upload_failed", timestamp_ms=event.timestamp_ms, exc_info=True)

    # -- stream lifecycle ---------------------------------------------------

    async def start(self) -> None:
        if self._state.is_detecting:
            return
        self._state = dataclasses.replace(self._state, is_detecting=True)

        await self._sensors.start()
        self._fix_task = asyncio.create_task(self._consume_fixes())
        self._motion_task = asyncio.create_task(self._consume_frames())
        log.info("detection_started", mode=self._mode.value,
                 vehicle=self._rule.vehicle_type.value)

    async def _consume_frames(self) -> None:
        async for frame in self._sensors.frames():
            self.handle_frame(frame)

    async def _consume_fixes(self) -> None:
        # GPS trouble of any kind only costs mapability, never detection.
        try:
            await self._location.start()
            async for fix in self._location.fixes():
                self.handle_fix(fix)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.warning("location_stream_failed", exc_info=True)

    async def wait_closed(self) -> None:
        """Wait until a finite motion stream (e.g. a replay) is exhausted."""
        if self._motion_task is not None:
            await self._motion_task

    async def stop(self) -> None:
        if not self._state.is_detecting:
            return
        self._state = dataclasses.replace(self._state, is_detecting=False)

        for task in (self._motion_task, self._fix_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._motion_task = None
        self._fix_task = None
        self._last_fix.clear()
        self._state = dataclasses.replace(self._state, gps_ready=False)

        await self._sensors.stop()
        await self._location.stop()

        if self._uploads:
            await asyncio.gather(*list(self._uploads), return_exceptions=True)
        log.info("detection_stopped", frames=self._state.frames_processed,
                 events=self._state.events_detected)
