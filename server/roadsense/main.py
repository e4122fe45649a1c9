"""RoadSense server: main entry point.

This is the only file that knows about concrete implementations.
It wires together the core, queue, storage, and API layers.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from roadsense.api.detections import router as detections_router
from roadsense.api.monitoring import router as monitoring_router
from roadsense.api.potholes import router as potholes_router
from roadsense.config import AppConfig, load_config
from roadsense.core.aggregator import CellAggregator
from roadsense.core.processor import DetectionProcessor
from roadsense.core.stats import ServerStats
from roadsense.queue.asyncio_queue import AsyncioDetectionQueue
from roadsense.storage.file_storage import FileDetectionStorage

log = structlog.get_logger()

# Module-level singletons (set during startup)
_processor: DetectionProcessor | None = None
_storage: FileDetectionStorage | None = None
_stats: ServerStats | None = None
_config: AppConfig | None = None


def get_processor() -> DetectionProcessor:
    assert _processor is not None, "Server not initialized"
    return _processor


def get_storage() -> FileDetectionStorage:
    assert _storage is not None, "Server not initialized"
    return _storage


def get_stats() -> ServerStats:
    assert _stats is not None, "Server not initialized"
    return _stats


def get_config() -> AppConfig:
    assert _config is not None, "Server not initialized"
    return _config


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


def build_components(config: AppConfig) -> tuple[DetectionProcessor, FileDetectionStorage, ServerStats]:
    """Create the server components for a config. Shared by startup and tests."""
    stats = ServerStats(active_window_seconds=config.limits.active_window_seconds)
    queue = AsyncioDetectionQueue(max_size=config.queue.max_size)
    storage = FileDetectionStorage(base_dir=config.storage.base_dir)
    aggregator = CellAggregator(
        storage=storage,
        stats=stats,
        precision=config.aggregation.cell_precision,
        quorum=config.aggregation.quorum,
    )
    processor = DetectionProcessor(
        queue=queue,
        storage=storage,
        aggregator=aggregator,
        stats=stats,
        max_batch_size=config.limits.max_batch_size,
    )
    return processor, storage, stats


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global _processor, _storage, _stats, _config

    _config = load_config()
    _setup_logging(_config)

    log.info("server_starting",
             env=_config.server.env,
             storage_dir=_config.storage.base_dir,
             queue_max_size=_config.queue.max_size,
             quorum=_config.aggregation.quorum)

    _processor, _storage, _stats = build_components(_config)

    # Start background storage + aggregation consumer
    consumer_task = asyncio.create_task(_processor.run_storage_consumer())

    log.info("server_started",
             host=_config.server.host,
             port=_config.server.port)

    yield

    # Shutdown
    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        pass
    flushed = await _processor.drain()
    log.info("server_stopped", flushed=flushed)


app = FastAPI(
    title="RoadSense",
    description="Crowdsourced pothole detection server",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(detections_router)
app.include_router(potholes_router)
app.include_router(monitoring_router)
