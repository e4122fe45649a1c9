"""Crowdsourced aggregation: promotes spatial cells to verified potholes.

Runs once per stored detection record:

1. Compute the record's cell key (geohash). Records without coordinates are
   rejected here; they stay stored but can never be promoted.
2. Load every record already carrying that key, plus the triggering record.
3. Count distinct reporters, ignoring the anonymous sentinel.
4. At quorum, upsert a VerifiedPothole for the cell with the mean position,
   mean severity ordinal and the number of records.
5. Backfill the cell key on records of the working set that lack it, so later
   queries on the cell see them.

The read-check-upsert sequence for one cell runs under a per-cell lock, so
two detections landing in the same cell at the same time are aggregated one
after the other. Recomputing from the same records always yields the same
aggregate, which makes re-triggering safe.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog

from roadsense.core.geocell import DEFAULT_PRECISION, cell_key
from roadsense.core.models import ANONYMOUS_REPORTER, VerifiedPothole

if TYPE_CHECKING:
    from roadsense.core.models import DetectionRecord
    from roadsense.core.stats import ServerStats
    from roadsense.storage.base import DetectionStorage

log = structlog.get_logger()

DEFAULT_QUORUM = 3


def distinct_reporters(records: Iterable[DetectionRecord]) -> frozenset[str]:
    return frozenset(
        r.reporter_id for r in records
        if r.reporter_id and r.reporter_id != ANONYMOUS_REPORTER
    )


def summarize_cell(
    key: str,
    records: list[DetectionRecord],
    quorum: int = DEFAULT_QUORUM,
    now_ms: int | None = None,
) -> VerifiedPothole | None:
    """Aggregate one cell's records, or None while the quorum is not reached."""
    reporters = distinct_reporters(records)
    if len(reporters) < quorum:
        return None

    located = [r for r in records if r.event.has_location]
    if not located:
        return None

    n = len(located)
    return VerifiedPothole(
        cell_key=key,
        mean_latitude=sum(r.event.latitude for r in located) / n,
        mean_longitude=sum(r.event.longitude for r in located) / n,
        mean_severity=sum(int(r.event.severity) for r in located) / n,
        mean_confidence=sum(r.event.confidence for r in located) / n,
        report_count=n,
        reporters=reporters,
        last_updated_ms=now_ms if now_ms is not None else int(time.time() * 1000),
    )


class CellAggregator:
    """Per-detection trigger that maintains the verified-pothole dataset."""

    def __init__(
        self,
        storage: DetectionStorage,
        stats: ServerStats | None = None,
        precision: int = DEFAULT_PRECISION,
        quorum: int = DEFAULT_QUORUM,
    ) -> None:
        self._storage = storage
        self._stats = stats
        self.precision = precision
        self.quorum = quorum
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def active_cells(self) -> int:
        """Cells currently holding or waiting on their lock."""
        return len(self._locks)

    @asynccontextmanager
    async def _cell_lock(self, key: str) -> AsyncIterator[None]:
        # Entries live only while some trigger holds or waits on them.
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def on_detection_created(self, record: DetectionRecord) -> VerifiedPothole | None:
        """Aggregate the cell of a newly stored record. Returns the pothole written, if any."""
        event = record.event
        if not event.has_location:
            log.warning("detection_missing_location", record_id=record.record_id,
                        reporter=record.reporter_id[:8])
            if self._stats is not None:
                self._stats.record_unlocated()
            return None

        key = cell_key(event.latitude, event.longitude, self.precision)
        if record.cell_key is not None and record.cell_key != key:
            log.debug("cell_key_precision_changed", record_id=record.record_id,
                      stored=record.cell_key, cell=key)

        async with self._cell_lock(key):
            records = await self._storage.query_cell(key)
            if not records:
                # The triggering record itself should be in the cell.
                log.info("cell_backfill_race", cell=key, record_id=record.record_id)
            if all(r.record_id != record.record_id for r in records):
                records.append(record)

            pothole = summarize_cell(key, records, self.quorum)
            log.debug("cell_evaluated", cell=key, detections=len(records),
                      reporters=len(distinct_reporters(records)), quorum=self.quorum)

            written = None
            if pothole is not None:
                written = await self._upsert(pothole)

            for r in records:
                if r.cell_key is None:
                    await self._storage.set_cell_key(r.record_id, key)

        return written

    async def _upsert(self, pothole: VerifiedPothole) -> VerifiedPothole | None:
        existing = await self._storage.get_verified(pothole.cell_key)
        if existing is not None and existing.report_count > pothole.report_count:
            log.warning("stale_aggregate_skipped", cell=pothole.cell_key,
                        existing=existing.report_count, new=pothole.report_count)
            return None

        if existing is not None:
            pothole.reporters = existing.reporters | pothole.reporters

        await self._storage.upsert_verified(pothole)
        if self._stats is not None:
            self._stats.record_promotion(created=existing is None)

        if existing is None:
            log.info("pothole_verified", cell=pothole.cell_key,
                     reports=pothole.report_count, reporters=pothole.reporter_count,
                     severity=pothole.severity_tier.label)
        else:
            log.info("verified_pothole_updated", cell=pothole.cell_key,
                     reports=pothole.report_count, reporters=pothole.reporter_count)
        return pothole
