"""Verified pothole API endpoints.

Mapping, warning and routing consumers read from here. Only verified
potholes are exposed; raw detections never leave the server.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from roadsense.core.geocell import haversine_m

router = APIRouter(prefix="/api/v1")


@router.get("/potholes")
async def get_potholes(
    min_severity: float = Query(default=1.0, ge=1.0, le=3.0),
    lat: float | None = Query(default=None, ge=-90.0, le=90.0),
    lon: float | None = Query(default=None, ge=-180.0, le=180.0),
    radius_m: float = Query(default=500.0, gt=0.0, le=50_000.0),
) -> JSONResponse:
    """Return verified potholes as a GeoJSON FeatureCollection.

    ``min_severity`` filters on the mean severity ordinal (1=LOW .. 3=HIGH).
    When both ``lat`` and ``lon`` are given, only potholes within
    ``radius_m`` of that point are returned, nearest first.
    """
    from roadsense.main import get_storage

    if (lat is None) != (lon is None):
        raise HTTPException(status_code=422, detail="lat and lon must be given together")

    potholes = [p for p in await get_storage().list_verified() if p.mean_severity >= min_severity]

    if lat is not None and lon is not None:
        with_dist = [(haversine_m(lat, lon, p.mean_latitude, p.mean_longitude), p) for p in potholes]
        with_dist = [(d, p) for d, p in with_dist if d <= radius_m]
        with_dist.sort(key=lambda dp: dp[0])
        potholes = [p for _, p in with_dist]

    geojson = {
        "type": "FeatureCollection",
        "features": [p.to_geojson_feature() for p in potholes],
    }
    return JSONResponse(content=geojson, media_type="application/geo+json")


@router.get("/potholes/{cell_key}")
async def get_pothole(cell_key: str) -> dict:
    """Return the persisted aggregate for one cell (reporter ids excluded)."""
    from roadsense.main import get_storage

    pothole = await get_storage().get_verified(cell_key)
    if pothole is None:
        raise HTTPException(status_code=404, detail=f"no verified pothole in cell {cell_key}")

    record = pothole.to_dict()
    record.pop("reporters")
    record["reporter_count"] = pothole.reporter_count
    record["severity"] = pothole.severity_tier.label
    return record
