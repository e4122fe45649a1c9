"""Tests for the crowdsourced cell aggregator."""

from __future__ import annotations

import asyncio
import itertools

import pytest

from roadsense.core.aggregator import CellAggregator, distinct_reporters, summarize_cell
from roadsense.core.models import Severity, VerifiedPothole
from roadsense.core.stats import ServerStats
from roadsense.storage.file_storage import FileDetectionStorage

CELL = "u05kq51"


@pytest.fixture
def storage(tmp_path):
    return FileDetectionStorage(tmp_path / "agg")


@pytest.fixture
def stats():
    return ServerStats()


async def _store_all(storage, records):
    for r in records:
        await storage.append(r)


def _cell_records(make_record):
    return [
        make_record(1, "alice", lat=45.7640, lon=4.8358, severity=Severity.LOW),
        make_record(2, "bob", lat=45.7644, lon=4.8362, severity=Severity.HIGH),
        make_record(3, "alice", lat=45.7641, lon=4.8360, severity=Severity.MEDIUM),
        make_record(4, "carol", lat=45.7643, lon=4.8359, severity=Severity.HIGH),
        make_record(5, "anonymous", lat=45.7642, lon=4.8361, severity=Severity.MEDIUM),
    ]


def test_distinct_reporters_excludes_anonymous(make_record):
    records = [make_record(1, "a"), make_record(2, "a"), make_record(3, "anonymous"), make_record(4, "")]
    assert distinct_reporters(records) == frozenset({"a"})


def test_summarize_cell_requires_quorum(make_record):
    records = [make_record(1, "a"), make_record(2, "b"), make_record(3, "anonymous")]
    assert summarize_cell(CELL, records, quorum=3) is None
    assert summarize_cell(CELL, records, quorum=2) is not None


def test_summarize_cell_means(make_record):
    records = _cell_records(make_record)
    pothole = summarize_cell(CELL, records, quorum=3, now_ms=42)
    assert pothole.report_count == 5
    assert pothole.reporters == frozenset({"alice", "bob", "carol"})
    assert pothole.mean_latitude == pytest.approx((45.7640 + 45.7644 + 45.7641 + 45.7643 + 45.7642) / 5)
    assert pothole.mean_longitude == pytest.approx((4.8358 + 4.8362 + 4.8360 + 4.8359 + 4.8361) / 5)
    assert pothole.mean_severity == pytest.approx((1 + 3 + 2 + 3 + 2) / 5)
    assert pothole.severity_tier is Severity.MEDIUM
    assert pothole.last_updated_ms == 42


@pytest.mark.asyncio
async def test_sub_quorum_never_promotes_but_backfills(storage, stats, make_record):
    agg = CellAggregator(storage, stats)
    records = [make_record(i, "alice" if i % 2 else "bob") for i in range(1, 7)]
    await _store_all(storage, records)

    for _ in range(3):
        for r in records:
            assert await agg.on_detection_created(r) is None

    assert await storage.list_verified() == []
    assert all(r.cell_key == CELL for r in records)
    assert len(await storage.query_cell(CELL)) == 6
    assert stats.snapshot()["potholes_verified"] == 0


@pytest.mark.asyncio
async def test_quorum_promotes_on_third_reporter(storage, stats, make_record):
    agg = CellAggregator(storage, stats)
    records = _cell_records(make_record)[:4]
    await _store_all(storage, records)

    results = [await agg.on_detection_created(r) for r in records]
    assert results[:3] == [None, None, None]
    assert results[3] is not None

    verified = await storage.get_verified(CELL)
    assert verified.report_count == 4
    assert verified.reporter_count == 3
    assert stats.snapshot()["potholes_verified"] == 1


@pytest.mark.asyncio
async def test_updates_merge_into_single_record(storage, stats, make_record):
    agg = CellAggregator(storage, stats)
    records = _cell_records(make_record)
    await _store_all(storage, records)
    for r in records:
        await agg.on_detection_created(r)

    assert len(await storage.list_verified()) == 1
    verified = await storage.get_verified(CELL)
    assert verified.report_count == 5
    snap = stats.snapshot()
    assert snap["potholes_verified"] == 1
    assert snap["verified_updates"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("order", list(itertools.islice(itertools.permutations(range(5)), 0, 120, 17)))
async def test_quorum_idempotent_regardless_of_order(tmp_path, make_record, order):
    records = _cell_records(make_record)
    expected = summarize_cell(CELL, records, quorum=3)

    storage = FileDetectionStorage(tmp_path / "perm")
    agg = CellAggregator(storage)
    await _store_all(storage, records)

    for i in order:
        await agg.on_detection_created(records[i])
    first = await storage.get_verified(CELL)
    assert first.same_aggregate(expected)

    # Re-triggering converges to the same aggregate.
    for i in reversed(order):
        await agg.on_detection_created(records[i])
    again = await storage.get_verified(CELL)
    assert again.same_aggregate(expected)
    assert again.report_count == 5


@pytest.mark.asyncio
async def test_concurrent_triggers_in_same_cell(storage, make_record):
    agg = CellAggregator(storage)
    records = _cell_records(make_record)
    await _store_all(storage, records)

    await asyncio.gather(*(agg.on_detection_created(r) for r in records))

    verified = await storage.get_verified(CELL)
    assert verified is not None
    assert verified.report_count == 5
    assert verified.reporters == frozenset({"alice", "bob", "carol"})


@pytest.mark.asyncio
async def test_missing_location_rejected(storage, stats, make_record):
    agg = CellAggregator(storage, stats)
    record = make_record(1, "alice", lat=None, lon=None)
    await storage.append(record)

    assert await agg.on_detection_created(record) is None
    assert record.cell_key is None
    assert stats.snapshot()["detections_unlocated"] == 1


@pytest.mark.asyncio
async def test_first_detection_in_cell_gets_key(storage, make_record):
    agg = CellAggregator(storage)
    record = make_record(1, "alice")
    await storage.append(record)
    assert await storage.query_cell(CELL) == []

    await agg.on_detection_created(record)
    assert record.cell_key == CELL
    assert [r.record_id for r in await storage.query_cell(CELL)] == [1]


@pytest.mark.asyncio
async def test_report_count_never_decreases(storage, make_record):
    agg = CellAggregator(storage)
    await storage.upsert_verified(VerifiedPothole(
        cell_key=CELL, mean_latitude=45.7642, mean_longitude=4.8360, mean_severity=2.0,
        report_count=10, reporters=frozenset({"x", "y", "z"}), last_updated_ms=1,
    ))
    records = _cell_records(make_record)[:4]
    await _store_all(storage, records)
    for r in records:
        await agg.on_detection_created(r)

    verified = await storage.get_verified(CELL)
    assert verified.report_count == 10
    assert verified.last_updated_ms == 1


@pytest.mark.asyncio
async def test_custom_quorum_and_precision(storage, make_record):
    agg = CellAggregator(storage, precision=5, quorum=1)
    record = make_record(1, "solo")
    await storage.append(record)
    pothole = await agg.on_detection_created(record)
    assert pothole is not None
    assert pothole.cell_key == "u05kq"
    assert pothole.report_count == 1


@pytest.mark.asyncio
async def test_cell_locks_released_after_use(storage, make_record):
    agg = CellAggregator(storage)
    records = [make_record(i, "alice", lat=45.0 + i * 0.01, lon=4.8) for i in range(1, 51)]
    await _store_all(storage, records)

    for r in records:
        await agg.on_detection_created(r)
    assert agg.active_cells == 0

    await asyncio.gather(*(agg.on_detection_created(r) for r in records + records))
    assert agg.active_cells == 0


@pytest.mark.asyncio
async def test_cell_key_follows_configured_precision(storage, make_record):
    record = make_record(1, "solo")
    record.cell_key = "u05kq"
    await storage.append(record)

    agg = CellAggregator(storage, precision=7, quorum=1)
    pothole = await agg.on_detection_created(record)
    assert pothole.cell_key == CELL
    assert await storage.get_verified("u05kq") is None
    # The stored key is never rewritten.
    assert record.cell_key == "u05kq"


def test_summarize_cell_mean_confidence(make_record):
    records = [
        make_record(1, "a", confidence=0.6),
        make_record(2, "b", confidence=0.8),
        make_record(3, "c", confidence=1.0),
    ]
    pothole = summarize_cell(CELL, records, quorum=3)
    assert pothole.mean_confidence == pytest.approx(0.8)
    assert pothole.to_geojson_feature()["properties"]["mean_confidence"] == 0.8
