"""RoadSense: core internal data models.

These are plain dataclasses with no framework dependencies. They are shared
by the on-device detection pipeline and the aggregation server. JSON payloads
are converted to/from these at the API boundary.

All timestamps are integer milliseconds since the Unix epoch.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum, IntEnum

# Reporter id used when an upload does not identify its device.
# Stored like any other reporter, but never counted toward a quorum.
ANONYMOUS_REPORTER = "anonymous"


class Severity(IntEnum):
    """Pothole severity as an ordinal. The display tier derives from it."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @property
    def label(self) -> str:
        return self.name

    @classmethod
    def parse(cls, value: int | float | str) -> Severity:
        """Accept the ordinal (1-3) or the tier name, case-insensitive."""
        if isinstance(value, str):
            name = value.strip().upper()
            if name in cls.__members__:
                return cls[name]
            if name.isdigit():
                return cls(int(name))
            raise ValueError(f"unknown severity {value!r}")
        if isinstance(value, bool):
            raise ValueError(f"unknown severity {value!r}")
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"severity must be a whole ordinal, got {value!r}")
        return cls(int(value))

    @classmethod
    def from_mean(cls, mean: float) -> Severity:
        """Nearest tier for an averaged ordinal."""
        ordinal = int(math.floor(mean + 0.5))
        return cls(min(max(ordinal, cls.LOW), cls.HIGH))


class VehicleType(str, Enum):
    CAR = "car"
    BIKE = "bike"


@dataclass(frozen=True)
class MotionFrame:
    """One combined accelerometer + gyroscope sample."""
    timestamp_ms: int
    ax: float
    ay: float
    az: float
    # Angular rate (rad/s). Carried through, not used by detection.
    gx: float = 0.0
    gy: float = 0.0
    gz: float = 0.0


@dataclass(frozen=True)
class LocationFix:
    timestamp_ms: int
    latitude: float
    longitude: float
    speed_mps: float | None = None

    @property
    def speed_kmh(self) -> float | None:
        if self.speed_mps is None:
            return None
        return self.speed_mps * 3.6


@dataclass(frozen=True)
class ProcessedMotion:
    timestamp_ms: int
    vertical_accel: float


@dataclass(frozen=True)
class PotholeEvent:
    """Result of one positive detection. The unit sent across the upload boundary."""
    timestamp_ms: int
    severity: Severity
    confidence: float
    latitude: float | None = None
    longitude: float | None = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        return {
            "timestamp_ms": self.timestamp_ms,
            "severity": int(self.severity),
            "confidence": round(self.confidence, 4),
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass
class DetectionRecord:
    """Server-side raw detection. Only ``cell_key`` is ever written after creation."""
    record_id: int
    reporter_id: str
    server_timestamp_ms: int
    event: PotholeEvent
    protocol_version: int = 1
    cell_key: str | None = None

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "reporter_id": self.reporter_id,
            "server_timestamp_ms": self.server_timestamp_ms,
            "protocol_version": self.protocol_version,
            "cell_key": self.cell_key,
            "event": self.event.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> DetectionRecord:
        ev = data.get("event", {})
        return cls(
            record_id=data["record_id"],
            reporter_id=data.get("reporter_id", ANONYMOUS_REPORTER),
            server_timestamp_ms=data.get("server_timestamp_ms", 0),
            protocol_version=data.get("protocol_version", 1),
            cell_key=data.get("cell_key"),
            event=PotholeEvent(
                timestamp_ms=ev.get("timestamp_ms", 0),
                severity=Severity.parse(ev.get("severity", 1)),
                confidence=ev.get("confidence", 0.0),
                latitude=ev.get("latitude"),
                longitude=ev.get("longitude"),
            ),
        )


@dataclass
class VerifiedPothole:
    """Aggregate for one spatial cell that reached the reporter quorum."""
    cell_key: str
    mean_latitude: float
    mean_longitude: float
    mean_severity: float
    report_count: int
    reporters: frozenset[str] = field(default_factory=frozenset)
    last_updated_ms: int = 0
    mean_confidence: float = 0.0

    @property
    def severity_tier(self) -> Severity:
        return Severity.from_mean(self.mean_severity)

    @property
    def reporter_count(self) -> int:
        return len(self.reporters)

    def same_aggregate(self, other: VerifiedPothole) -> bool:
        """True when both describe the same aggregate, ignoring update time."""
        return (
            self.cell_key == other.cell_key
            and self.report_count == other.report_count
            and self.reporters == other.reporters
            and math.isclose(self.mean_latitude, other.mean_latitude, abs_tol=1e-9)
            and math.isclose(self.mean_longitude, other.mean_longitude, abs_tol=1e-9)
            and math.isclose(self.mean_severity, other.mean_severity, abs_tol=1e-9)
            and math.isclose(self.mean_confidence, other.mean_confidence, abs_tol=1e-9)
        )

    def to_dict(self) -> dict:
        return {
            "cell_key": self.cell_key,
            "mean_latitude": self.mean_latitude,
            "mean_longitude": self.mean_longitude,
            "mean_severity": self.mean_severity,
            "mean_confidence": self.mean_confidence,
            "report_count": self.report_count,
            "last_updated": self.last_updated_ms,
            "reporters": sorted(self.reporters),
        }

    @classmethod
    def from_dict(cls, data: dict) -> VerifiedPothole:
        return cls(
            cell_key=data["cell_key"],
            mean_latitude=data["mean_latitude"],
            mean_longitude=data["mean_longitude"],
            mean_severity=data["mean_severity"],
            mean_confidence=data.get("mean_confidence", 0.0),
            report_count=data["report_count"],
            reporters=frozenset(data.get("reporters", [])),
            last_updated_ms=data.get("last_updated", 0),
        )

    def to_geojson_feature(self) -> dict:
        return {
            "type": "Feature",
            "geometry": {
                "type": "Point",
                "coordinates": [round(self.mean_longitude, 6), round(self.mean_latitude, 6)],
            },
            "properties": {
                "cell_key": self.cell_key,
                "mean_severity": round(self.mean_severity, 2),
                "mean_confidence": round(self.mean_confidence, 3),
                "severity": self.severity_tier.label,
                "report_count": self.report_count,
                "reporters": self.reporter_count,
                "last_updated": self.last_updated_ms,
            },
        }


@dataclass(frozen=True)
class UploadMessageData:
    """One parsed POST /detections body: a single event or a batch."""
    protocol_version: int
    reporter_id: str
    event: PotholeEvent | None = None
    events: list[PotholeEvent] = field(default_factory=list)
