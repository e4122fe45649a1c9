"""Server statistics and active-reporter tracking.

Tracks in-memory counters and a sliding window of active reporters.
No framework dependencies.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass


@dataclass
class ReporterActivity:
    """Tracks a single reporter's recent activity."""
    last_seen: float          # time.monotonic() timestamp
    reporting_mode: str       # "realtime" or "batch"
    detections_sent: int = 0


class ServerStats:
    """Thread-safe server statistics with active-reporter tracking.

    A reporter is "real-time active" if its last upload carried a single
    event (batches imply offline catch-up) and it was seen within
    ``active_window_seconds``.
    """

    def __init__(self, active_window_seconds: float = 120.0) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()
        self._active_window = active_window_seconds

        # Counters
        self.detections_received: int = 0
        self.detections_stored: int = 0
        self.detections_rejected: int = 0
        self.detections_unlocated: int = 0
        self.bytes_received: int = 0
        self.batches_received: int = 0
        self.potholes_verified: int = 0
        self.verified_updates: int = 0
        self.storage_errors: int = 0
        self.aggregation_errors: int = 0
        self.queue_depth: int = 0
        self.queue_max_depth: int = 0

        # reporter_id → ReporterActivity
        self._reporters: dict[str, ReporterActivity] = {}

    def _touch(self, reporter_id: str, mode: str, count: int) -> None:
        """Caller holds lock."""
        now = time.monotonic()
        rep = self._reporters.get(reporter_id)
        if rep is None:
            self._reporters[reporter_id] = ReporterActivity(
                last_seen=now, reporting_mode=mode, detections_sent=count,
            )
        else:
            rep.last_seen = now
            rep.reporting_mode = mode
            rep.detections_sent += count

    def record_detection(self, reporter_id: str, size_bytes: int) -> None:
        """Record a single real-time detection upload."""
        with self._lock:
            self.detections_received += 1
            self.bytes_received += size_bytes
            self._touch(reporter_id, "realtime", 1)

    def record_batch(self, reporter_id: str, count: int, size_bytes: int) -> None:
        """Record that a batch of detections was received."""
        with self._lock:
            self.detections_received += count
            self.batches_received += 1
            self.bytes_received += size_bytes
            self._touch(reporter_id, "batch", count)

    def record_stored(self, count: int = 1) -> None:
        with self._lock:
            self.detections_stored += count

    def record_rejected(self, count: int = 1) -> None:
        with self._lock:
            self.detections_rejected += count

    def record_unlocated(self) -> None:
        with self._lock:
            self.detections_unlocated += 1

    def record_promotion(self, created: bool) -> None:
        with self._lock:
            if created:
                self.potholes_verified += 1
            else:
                self.verified_updates += 1

    def record_storage_error(self) -> None:
        with self._lock:
            self.storage_errors += 1

    def record_aggregation_error(self) -> None:
        with self._lock:
            self.aggregation_errors += 1

    def update_queue_depth(self, depth: int) -> None:
        with self._lock:
            self.queue_depth = depth
            if depth > self.queue_max_depth:
                self.queue_max_depth = depth

    def _prune_stale_reporters(self, now: float) -> None:
        """Remove reporters not seen within the active window. Caller holds lock."""
        cutoff = now - self._active_window
        stale = [rid for rid, rep in self._reporters.items() if rep.last_seen < cutoff]
        for rid in stale:
            del self._reporters[rid]

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        now_mono = time.monotonic()
        with self._lock:
            self._prune_stale_reporters(now_mono)

            active_realtime = sum(
                1 for rep in self._reporters.values()
                if rep.reporting_mode == "realtime"
            )
            active_batch = len(self._reporters) - active_realtime

            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "detections_received": self.detections_received,
                "detections_stored": self.detections_stored,
                "detections_rejected": self.detections_rejected,
                "detections_unlocated": self.detections_unlocated,
                "bytes_received": self.bytes_received,
                "batches_received": self.batches_received,
                "potholes_verified": self.potholes_verified,
                "verified_updates": self.verified_updates,
                "storage_errors": self.storage_errors,
                "aggregation_errors": self.aggregation_errors,
                "queue_depth": self.queue_depth,
                "queue_max_depth_ever": self.queue_max_depth,
                "active_reporters": {
                    "total": len(self._reporters),
                    "realtime": active_realtime,
                    "batch": active_batch,
                    "window_seconds": self._active_window,
                },
            }
