"""RoadSense configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: ROADSENSE_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class QueueConfig:
    max_size: int = 10_000


@dataclass
class StorageConfig:
    base_dir: str = "data/detections"


@dataclass
class DetectionConfig:
    """On-device detector parameters, also served to clients via /config."""
    vehicle_type: str = "car"  # "car" or "bike"
    mode: str = "rule_only"  # "rule_only" or "rule_plus_refinement"
    cooldown_ms: int = 900
    high_pass_cutoff_hz: float = 1.0
    gravity_cutoff_hz: float = 0.8
    min_speed_kmh: float = 5.0
    minimal_filtering: bool = False
    debug: bool = False


@dataclass
class AggregationConfig:
    cell_precision: int = 7  # geohash length, ~153m x 153m cells
    quorum: int = 3


@dataclass
class LimitsConfig:
    max_batch_size: int = 100
    active_window_seconds: float = 120.0


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = ("server", "queue", "storage", "detection", "aggregation", "limits", "logging")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "ROADSENSE_SERVER_HOST": lambda v: setattr(config.server, "host", v),
        "ROADSENSE_SERVER_PORT": lambda v: setattr(config.server, "port", int(v)),
        "ROADSENSE_SERVER_ENV": lambda v: setattr(config.server, "env", v),
        "ROADSENSE_QUEUE_MAX_SIZE": lambda v: setattr(config.queue, "max_size", int(v)),
        "ROADSENSE_STORAGE_BASE_DIR": lambda v: setattr(config.storage, "base_dir", v),
        "ROADSENSE_DETECTION_VEHICLE_TYPE": lambda v: setattr(config.detection, "vehicle_type", v),
        "ROADSENSE_DETECTION_MODE": lambda v: setattr(config.detection, "mode", v),
        "ROADSENSE_DETECTION_COOLDOWN_MS": lambda v: setattr(config.detection, "cooldown_ms", int(v)),
        "ROADSENSE_DETECTION_HIGH_PASS_CUTOFF_HZ": lambda v: setattr(config.detection, "high_pass_cutoff_hz", float(v)),
        "ROADSENSE_DETECTION_GRAVITY_CUTOFF_HZ": lambda v: setattr(config.detection, "gravity_cutoff_hz", float(v)),
        "ROADSENSE_DETECTION_MIN_SPEED_KMH": lambda v: setattr(config.detection, "min_speed_kmh", float(v)),
        "ROADSENSE_DETECTION_MINIMAL_FILTERING": lambda v: setattr(config.detection, "minimal_filtering", _parse_bool(v)),
        "ROADSENSE_DETECTION_DEBUG": lambda v: setattr(config.detection, "debug", _parse_bool(v)),
        "ROADSENSE_AGGREGATION_CELL_PRECISION": lambda v: setattr(config.aggregation, "cell_precision", int(v)),
        "ROADSENSE_AGGREGATION_QUORUM": lambda v: setattr(config.aggregation, "quorum", int(v)),
        "ROADSENSE_LIMITS_MAX_BATCH_SIZE": lambda v: setattr(config.limits, "max_batch_size", int(v)),
        "ROADSENSE_LIMITS_ACTIVE_WINDOW": lambda v: setattr(config.limits, "active_window_seconds", float(v)),
        "ROADSENSE_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "ROADSENSE_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    if config_path is None:
        config_path = Path("config.yaml")
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for name in _SECTIONS:
            section = getattr(config, name)
            for k, v in (raw.get(name) or {}).items():
                if hasattr(section, k):
                    setattr(section, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
