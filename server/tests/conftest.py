"""Shared test fixtures."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

import roadsense.main as main_module
from roadsense.config import AppConfig
from roadsense.core.models import DetectionRecord, PotholeEvent, Severity
from roadsense.main import build_components


@pytest.fixture(autouse=True)
def _init_server(tmp_path):
    """Initialize server singletons for every test, using a temp directory."""
    config = AppConfig()
    config.storage.base_dir = str(tmp_path / "data")
    config.logging.level = "warning"

    processor, storage, stats = build_components(config)

    # Patch module-level singletons
    main_module._config = config
    main_module._stats = stats
    main_module._storage = storage
    main_module._processor = processor

    yield

    # Cleanup
    main_module._config = None
    main_module._stats = None
    main_module._storage = None
    main_module._processor = None


@pytest.fixture
async def client():
    from roadsense.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _make_record(
    record_id: int,
    reporter_id: str,
    lat: float | None = 45.764043,
    lon: float | None = 4.835659,
    severity: Severity = Severity.MEDIUM,
    confidence: float = 0.8,
) -> DetectionRecord:
    return DetectionRecord(
        record_id=record_id,
        reporter_id=reporter_id,
        server_timestamp_ms=1_767_225_600_000 + record_id * 1000,
        event=PotholeEvent(
            timestamp_ms=1_767_225_600_000 + record_id * 1000 - 50,
            severity=severity,
            confidence=confidence,
            latitude=lat,
            longitude=lon,
        ),
    )


@pytest.fixture
def make_record():
    return _make_record
