"""Detection upload API endpoints.

This is the thin FastAPI adapter. It parses HTTP requests, converts JSON to
internal models, and calls the processor.
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Request, Response

from roadsense.core.models import (
    ANONYMOUS_REPORTER,
    PotholeEvent,
    Severity,
    UploadMessageData,
)

router = APIRouter(prefix="/api/v1")


def _optional_coord(data: dict, key: str, limit: float) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    value = float(value)
    if not -limit <= value <= limit:
        raise ValueError(f"{key} {value} out of range")
    return value


def _parse_json_event(data: dict) -> PotholeEvent:
    """Parse one event. Raises ValueError/TypeError/KeyError on malformed input."""
    confidence = float(data.get("confidence", 0.0))
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"confidence {confidence} outside [0, 1]")

    latitude = _optional_coord(data, "latitude", 90.0)
    longitude = _optional_coord(data, "longitude", 180.0)
    if (latitude is None) != (longitude is None):
        raise ValueError("latitude and longitude must be given together")

    return PotholeEvent(
        timestamp_ms=int(data["timestamp_ms"]),
        severity=Severity.parse(data["severity"]),
        confidence=confidence,
        latitude=latitude,
        longitude=longitude,
    )


def _parse_json_message(body: dict) -> UploadMessageData:
    """Parse an upload body from JSON."""
    event = None
    events = []

    if "event" in body:
        event = _parse_json_event(body["event"])
    if "batch" in body:
        events = [_parse_json_event(e) for e in body["batch"].get("events", [])]

    reporter_id = body.get("reporter_id") or ANONYMOUS_REPORTER
    if not isinstance(reporter_id, str):
        raise ValueError("reporter_id must be a string")

    return UploadMessageData(
        protocol_version=int(body.get("protocol_version", 1)),
        reporter_id=reporter_id,
        event=event,
        events=events,
    )


def _json_response(payload: dict, status_code: int) -> Response:
    return Response(
        content=json.dumps(payload),
        status_code=status_code,
        media_type="application/json",
    )


@router.post("/detections")
async def receive_detections(request: Request) -> Response:
    """Receive pothole detections from devices.

    Accepts application/json, either ``{"event": {...}}`` for a single
    real-time detection or ``{"batch": {"events": [...]}}``.
    """
    from roadsense.main import get_processor

    processor = get_processor()
    body_bytes = await request.body()
    content_type = request.headers.get("content-type", "application/json")

    if "protobuf" in content_type:
        return _json_response(
            {"accepted": False, "error": "protobuf not supported, use application/json"}, 415,
        )

    try:
        body = json.loads(body_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _json_response({"accepted": False, "error": "invalid JSON"}, 400)

    if not isinstance(body, dict):
        return _json_response({"accepted": False, "error": "expected a JSON object"}, 400)

    try:
        msg = _parse_json_message(body)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        return _json_response({"accepted": False, "error": f"invalid event: {e}"}, 422)

    accepted, error, stored = await processor.process_message(msg, len(body_bytes))

    status = 200 if accepted else 422
    if error and "too old" in error:
        status = 426
    elif error and "max_batch_size" in error:
        status = 413

    return _json_response(
        {"accepted": accepted, "error": error, "detections_stored": stored}, status,
    )
