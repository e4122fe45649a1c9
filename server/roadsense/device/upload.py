"""Upload boundary: sends confirmed pothole events to the aggregation server.

Uploads are fire-and-forget from the detector's point of view. Failures are
retried a bounded number of times, then logged and dropped; nothing here
raises back into the detection loop.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

import httpx
import structlog

from roadsense.core.models import ANONYMOUS_REPORTER

if TYPE_CHECKING:
    from roadsense.core.models import PotholeEvent

log = structlog.get_logger()

PROTOCOL_VERSION = 1


class UploadService(Protocol):
    """Port: persists one detected event on the server side."""

    async def upload(self, event: PotholeEvent) -> None: ...


def build_payload(event: PotholeEvent, reporter_id: str) -> dict:
    """JSON body accepted by POST /api/v1/detections."""
    return {
        "protocol_version": PROTOCOL_VERSION,
        "reporter_id": reporter_id,
        "event": event.to_dict(),
    }


class LoggingUploadService:
    """Logs events instead of sending them. Useful offline and in demos."""

    def __init__(self, reporter_id: str = ANONYMOUS_REPORTER) -> None:
        self.reporter_id = reporter_id

    async def upload(self, event: PotholeEvent) -> None:
        log.info("upload_logged", reporter=self.reporter_id[:8],
                 severity=event.severity.label,
                 confidence=round(event.confidence, 3),
                 lat=event.latitude, lon=event.longitude,
                 timestamp_ms=event.timestamp_ms)


class HttpUploadService:
    """Posts events to a RoadSense server with httpx."""

    def __init__(
        self,
        server_url: str,
        reporter_id: str = ANONYMOUS_REPORTER,
        client: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        backoff_s: float = 0.5,
        timeout_s: float = 10.0,
    ) -> None:
        self.reporter_id = reporter_id
        self._url = server_url.rstrip("/") + "/api/v1/detections"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._max_attempts = max(1, max_attempts)
        self._backoff_s = backoff_s
        self.sent = 0
        self.failed = 0

    async def upload(self, event: PotholeEvent) -> None:
        payload = build_payload(event, self.reporter_id)
        for attempt in range(1, self._max_attempts + 1):
            try:
                resp = await self._client.post(self._url, json=payload)
            except httpx.HTTPError as e:
                log.warning("upload_attempt_failed", attempt=attempt, error=str(e))
            else:
                if resp.status_code == 200:
                    self.sent += 1
                    return
                if 400 <= resp.status_code < 500:
                    # The server rejected the event itself; retrying won't help.
                    log.error("upload_rejected", status=resp.status_code, body=resp.text[:200])
                    self.failed += 1
                    return
                log.warning("upload_attempt_failed", attempt=attempt, status=resp.status_code)

            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff_s * 2 ** (attempt - 1))

        self.failed += 1
        log.error("upload_gave_up", attempts=self._max_attempts,
                  timestamp_ms=event.timestamp_ms)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
