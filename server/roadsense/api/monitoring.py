"""Health check and monitoring endpoints."""

from __future__ import annotations

import json
import shutil
from dataclasses import asdict
from pathlib import Path

from fastapi import APIRouter

from roadsense.core.models import VehicleType
from roadsense.core.processor import MIN_PROTOCOL_VERSION
from roadsense.detection.detector import thresholds_for

router = APIRouter(prefix="/api/v1")

# Load build info once at import time.
_BUILD_INFO_PATH = Path(__file__).parent.parent / "build_info.json"
_BUILD_INFO: dict = {}
if _BUILD_INFO_PATH.exists():
    try:
        _BUILD_INFO = json.loads(_BUILD_INFO_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        pass


@router.get("/health")
async def health() -> dict:
    """Basic health check."""
    from roadsense.main import get_config, get_stats

    stats = get_stats()
    config = get_config()

    storage_path = Path(config.storage.base_dir)
    try:
        disk = shutil.disk_usage(storage_path if storage_path.exists() else ".")
        disk_free_gb = round(disk.free / (1024 ** 3), 1)
        storage_writable = True
    except OSError:
        disk_free_gb = -1
        storage_writable = False

    snapshot = stats.snapshot()
    result = {
        "status": "ok",
        "version": "0.1.0",
        "uptime_seconds": snapshot["uptime_seconds"],
        "queue_depth": snapshot["queue_depth"],
        "storage_writable": storage_writable,
        "disk_free_gb": disk_free_gb,
    }
    result.update(_BUILD_INFO)
    return result


@router.get("/stats")
async def stats() -> dict:
    """Detailed server statistics including active reporter counts.

    The ``active_reporters`` section shows:
    - ``total``: reporters seen in the last N seconds (configurable window)
    - ``realtime``: reporters currently uploading single detections
    - ``batch``: reporters whose last upload was a batch
    - ``window_seconds``: the time window used for "active" calculation
    """
    from roadsense.main import get_stats

    return get_stats().snapshot()


@router.get("/config")
async def get_client_config() -> dict:
    """Detector configuration for devices.

    Devices call this on startup to pick up server-controlled parameters.
    """
    from roadsense.main import get_config

    config = get_config()
    detection = config.detection
    return {
        "min_protocol_version": MIN_PROTOCOL_VERSION,
        "max_batch_size": config.limits.max_batch_size,
        "detection": asdict(detection),
        "thresholds": {
            vt.value: {
                "normal": thresholds_for(vt, minimal_filtering=False),
                "minimal_filtering": thresholds_for(vt, minimal_filtering=True),
            }
            for vt in VehicleType
        },
        "aggregation": {
            "cell_precision": config.aggregation.cell_precision,
            "quorum": config.aggregation.quorum,
        },
    }
