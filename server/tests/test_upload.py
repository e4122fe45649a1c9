"""Tests for the device upload services."""

from __future__ import annotations

import json

import httpx
import pytest

from roadsense.core.models import PotholeEvent, Severity
from roadsense.device.upload import HttpUploadService, LoggingUploadService, build_payload

EVENT = PotholeEvent(timestamp_ms=1_767_225_600_000, severity=Severity.MEDIUM,
                     confidence=0.7512345, latitude=45.7642, longitude=4.8360)


def _service(handler, **kwargs) -> HttpUploadService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpUploadService("http://roadsense.test/", reporter_id="device-1",
                             client=client, backoff_s=0.0, **kwargs)


def test_build_payload():
    payload = build_payload(EVENT, "device-1")
    assert payload == {
        "protocol_version": 1,
        "reporter_id": "device-1",
        "event": {
            "timestamp_ms": 1_767_225_600_000,
            "severity": 2,
            "confidence": 0.7512,
            "latitude": 45.7642,
            "longitude": 4.8360,
        },
    }


@pytest.mark.asyncio
async def test_http_upload_posts_payload():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"accepted": True})

    service = _service(handler)
    await service.upload(EVENT)

    assert service.sent == 1
    assert seen[0][0] == "/api/v1/detections"
    assert seen[0][1]["reporter_id"] == "device-1"


@pytest.mark.asyncio
async def test_http_upload_retries_server_errors():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200)

    service = _service(handler, max_attempts=3)
    await service.upload(EVENT)
    assert len(attempts) == 3
    assert service.sent == 1
    assert service.failed == 0


@pytest.mark.asyncio
async def test_http_upload_gives_up_without_raising():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    service = _service(handler, max_attempts=2)
    await service.upload(EVENT)
    assert service.sent == 0
    assert service.failed == 1


@pytest.mark.asyncio
async def test_http_upload_does_not_retry_rejections():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(422, json={"accepted": False})

    service = _service(handler, max_attempts=3)
    await service.upload(EVENT)
    assert len(attempts) == 1
    assert service.failed == 1


@pytest.mark.asyncio
async def test_logging_upload_service():
    await LoggingUploadService("device-1").upload(EVENT)
