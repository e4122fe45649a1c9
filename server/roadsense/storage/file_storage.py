"""File-based storage implementation.

Layout under base_dir:

- detections/YYYY/MM/DD/HH/detections.jsonl: append-only raw detections,
  partitioned by server receive time (source of truth)
- cell_keys.jsonl: append-only log of cell-key backfills
  ({"record_id": ..., "cell_key": ...}), replayed over the detections on load
- verified_potholes.json: current verified-pothole dataset, rewritten
  atomically on each upsert

Everything is indexed in memory at startup so cell queries never touch disk.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from roadsense.core.models import DetectionRecord, VerifiedPothole

if TYPE_CHECKING:
    from collections.abc import Iterator

log = structlog.get_logger()


class FileDetectionStorage:
    """DetectionStorage backed by JSON Lines files on disk."""

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir)
        self._detections_dir = self._base_dir / "detections"
        self._detections_dir.mkdir(parents=True, exist_ok=True)
        self._cell_keys_path = self._base_dir / "cell_keys.jsonl"
        self._verified_path = self._base_dir / "verified_potholes.json"

        self._records: dict[int, DetectionRecord] = {}
        self._by_cell: dict[str, list[int]] = {}
        self._verified: dict[str, VerifiedPothole] = {}
        self._load()

    # -- loading ------------------------------------------------------------

    def _iter_jsonl(self, path: Path) -> Iterator[dict]:
        with open(path) as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    log.warning("storage_corrupt_line", path=str(path), line=lineno)

    def _load(self) -> None:
        for path in sorted(self._detections_dir.rglob("detections.jsonl")):
            for data in self._iter_jsonl(path):
                record = DetectionRecord.from_dict(data)
                self._index(record)

        if self._cell_keys_path.exists():
            for data in self._iter_jsonl(self._cell_keys_path):
                self._apply_cell_key(data["record_id"], data["cell_key"])

        if self._verified_path.exists():
            raw = json.loads(self._verified_path.read_text())
            for item in raw.get("potholes", []):
                pothole = VerifiedPothole.from_dict(item)
                self._verified[pothole.cell_key] = pothole

        if self._records or self._verified:
            log.info("storage_loaded", detections=len(self._records),
                     verified=len(self._verified), base_dir=str(self._base_dir))

    def _index(self, record: DetectionRecord) -> None:
        self._records[record.record_id] = record
        if record.cell_key:
            self._by_cell.setdefault(record.cell_key, []).append(record.record_id)

    def _apply_cell_key(self, record_id: int, cell_key: str) -> bool:
        record = self._records.get(record_id)
        if record is None or record.cell_key is not None:
            return False
        record.cell_key = cell_key
        self._by_cell.setdefault(cell_key, []).append(record_id)
        return True

    # -- detections ---------------------------------------------------------

    def _hour_dir(self, timestamp_ms: int) -> Path:
        """Return the directory for a given timestamp."""
        dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        path = (self._detections_dir / f"{dt.year:04d}" / f"{dt.month:02d}"
                / f"{dt.day:02d}" / f"{dt.hour:02d}")
        path.mkdir(parents=True, exist_ok=True)
        return path

    async def append(self, record: DetectionRecord) -> None:
        """Append a single detection record to disk and the index."""
        if record.record_id in self._records:
            raise ValueError(f"record_id {record.record_id} already stored")

        hour_dir = self._hour_dir(record.server_timestamp_ms)
        line = json.dumps(record.to_dict(), separators=(",", ":"))
        with open(hour_dir / "detections.jsonl", "a") as f:
            f.write(line + "\n")

        self._index(record)
        log.debug("detection_written", record_id=record.record_id, path=str(hour_dir))

    async def get(self, record_id: int) -> DetectionRecord | None:
        return self._records.get(record_id)

    async def query_cell(self, cell_key: str) -> list[DetectionRecord]:
        return [self._records[rid] for rid in self._by_cell.get(cell_key, [])]

    async def set_cell_key(self, record_id: int, cell_key: str) -> bool:
        """Backfill a record's cell key. Returns False if already set or unknown."""
        if not self._apply_cell_key(record_id, cell_key):
            return False
        with open(self._cell_keys_path, "a") as f:
            f.write(json.dumps({"record_id": record_id, "cell_key": cell_key},
                               separators=(",", ":")) + "\n")
        return True

    def last_record_id(self) -> int:
        return max(self._records, default=0)

    # -- verified potholes --------------------------------------------------

    async def get_verified(self, cell_key: str) -> VerifiedPothole | None:
        return self._verified.get(cell_key)

    async def upsert_verified(self, pothole: VerifiedPothole) -> None:
        self._verified[pothole.cell_key] = pothole
        self._write_verified()

    async def list_verified(self) -> list[VerifiedPothole]:
        return list(self._verified.values())

    def _write_verified(self) -> None:
        payload = {"potholes": [p.to_dict() for p in self._verified.values()]}
        tmp_path = self._verified_path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(payload, separators=(",", ":")))
        os.replace(tmp_path, self._verified_path)
