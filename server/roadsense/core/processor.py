"""Detection processor: validates, enqueues, stores and aggregates uploads.

This is the core business logic of the server. It depends on the
DetectionQueue and DetectionStorage protocols, not concrete implementations.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog

from roadsense.core.models import DetectionRecord

if TYPE_CHECKING:
    from roadsense.core.aggregator import CellAggregator
    from roadsense.core.models import PotholeEvent, UploadMessageData
    from roadsense.core.stats import ServerStats
    from roadsense.queue.base import DetectionQueue
    from roadsense.storage.base import DetectionStorage

log = structlog.get_logger()

# Minimum protocol version the server accepts.
MIN_PROTOCOL_VERSION = 1


class DetectionProcessor:
    """Validates upload messages, enqueues detections and feeds the aggregator."""

    def __init__(
        self,
        queue: DetectionQueue,
        storage: DetectionStorage,
        aggregator: CellAggregator,
        stats: ServerStats,
        max_batch_size: int = 100,
    ) -> None:
        self._queue = queue
        self._storage = storage
        self._aggregator = aggregator
        self._stats = stats
        self._max_batch_size = max_batch_size
        self._next_record_id = storage.last_record_id() + 1

    async def process_message(self, msg: UploadMessageData, size_bytes: int) -> tuple[bool, str, int]:
        """Process an upload. Returns (accepted, error_message, detections_enqueued)."""
        if msg.protocol_version < MIN_PROTOCOL_VERSION:
            self._stats.record_rejected()
            return False, f"protocol_version {msg.protocol_version} too old, minimum is {MIN_PROTOCOL_VERSION}", 0

        events: list[PotholeEvent] = []
        is_batch = False
        if msg.event is not None:
            events = [msg.event]
        elif msg.events:
            events = msg.events
            is_batch = True

        if not events:
            return True, "", 0

        if len(events) > self._max_batch_size:
            self._stats.record_rejected(len(events))
            return False, f"batch of {len(events)} exceeds max_batch_size {self._max_batch_size}", 0

        if is_batch:
            self._stats.record_batch(msg.reporter_id, len(events), size_bytes)
        else:
            self._stats.record_detection(msg.reporter_id, size_bytes)

        stored = 0
        now_ms = int(time.time() * 1000)
        for event in events:
            record = DetectionRecord(
                record_id=self._next_record_id,
                reporter_id=msg.reporter_id,
                server_timestamp_ms=now_ms,
                protocol_version=msg.protocol_version,
                event=event,
            )
            self._next_record_id += 1

            try:
                await self._queue.put(record)
                stored += 1
            except Exception:
                log.error("queue_put_failed", reporter=msg.reporter_id[:8],
                          record_id=record.record_id, exc_info=True)
                self._stats.record_rejected()

        self._stats.update_queue_depth(self._queue.qsize())

        if stored > 0:
            log.info("detections_enqueued", reporter=msg.reporter_id[:8],
                     count=stored, batch=is_batch)

        return True, "", stored

    async def handle_record(self, record: DetectionRecord) -> None:
        """Persist one record, then run the aggregation trigger for it."""
        try:
            await self._storage.append(record)
        except Exception:
            log.error("storage_write_failed", record_id=record.record_id, exc_info=True)
            self._stats.record_storage_error()
            return

        self._stats.record_stored()
        self._stats.update_queue_depth(self._queue.qsize())
        log.debug("detection_stored", record_id=record.record_id,
                  reporter=record.reporter_id[:8])

        try:
            await self._aggregator.on_detection_created(record)
        except Exception:
            log.error("aggregation_failed", record_id=record.record_id, exc_info=True)
            self._stats.record_aggregation_error()

    async def drain(self) -> int:
        """Handle every record currently queued. Returns how many were handled."""
        handled = 0
        while (record := self._queue.get_nowait()) is not None:
            await self.handle_record(record)
            handled += 1
        return handled

    async def run_storage_consumer(self) -> None:
        """Consume from the queue and store + aggregate. Runs as a background task."""
        log.info("storage_consumer_started")
        while True:
            record = await self._queue.get()
            await self.handle_record(record)
