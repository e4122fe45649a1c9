#!/usr/bin/env python3
"""RoadSense crowd simulator.

Several devices drive the same route past a fixed set of potholes. Each device
synthesizes 50 Hz accelerometer frames (gravity, road noise and an impact
spike at every pothole) and GPS fixes, runs them through the on-device
detection pipeline, and uploads the resulting events to a server. With three
or more devices the potholes should show up in GET /api/v1/potholes.

Usage:
    # 4 cars over a 2 km route through Lyon, as fast as possible
    python -m tools.simulator.simulate --server http://localhost:8000 --devices 4

    # Bikes, more potholes, paced in real time
    python -m tools.simulator.simulate --vehicle bike --potholes 10 --realtime

    # No server: log events instead of uploading them
    python -m tools.simulator.simulate --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import math
import random
import time
import uuid
from dataclasses import dataclass, field

import httpx

from roadsense.core.models import LocationFix, MotionFrame, Severity
from roadsense.detection.detector import DetectorMode, RuleBasedDetector
from roadsense.detection.filters import STANDARD_GRAVITY
from roadsense.detection.orchestrator import DetectionOrchestrator
from roadsense.device.location import NullLocationService
from roadsense.device.sensors import ReplaySensorService
from roadsense.device.upload import HttpUploadService, LoggingUploadService

FRAME_PERIOD_MS = 20
FIX_PERIOD_MS = 200

# Vertical spike added to az at impact, m/s^2.
_IMPACT_MPS2 = {Severity.LOW: 5.0, Severity.MEDIUM: 9.0, Severity.HIGH: 14.0}
_BIKE_SCALE = 0.6


@dataclass
class Pothole:
    distance_m: float
    severity: Severity


@dataclass
class SimDevice:
    reporter_id: str
    speed_mps: float
    events: int = 0
    frames: int = 0
    severities: list[int] = field(default_factory=list)


def interpolate(start: tuple[float, float], end: tuple[float, float],
                fraction: float) -> tuple[float, float]:
    """Point at ``fraction`` of the straight segment start -> end."""
    return (start[0] + (end[0] - start[0]) * fraction,
            start[1] + (end[1] - start[1]) * fraction)


def route_length_m(start: tuple[float, float], end: tuple[float, float]) -> float:
    mean_lat = math.radians((start[0] + end[0]) / 2)
    dy = (end[0] - start[0]) * 111_000
    dx = (end[1] - start[1]) * 111_000 * math.cos(mean_lat)
    return math.hypot(dx, dy)


def place_potholes(count: int, length_m: float, rng: random.Random) -> list[Pothole]:
    """Spread potholes along the route, away from both ends."""
    potholes = []
    for i in range(count):
        slot = length_m / (count + 1)
        distance = slot * (i + 1) + rng.uniform(-slot / 4, slot / 4)
        severity = rng.choices(list(Severity), weights=[50, 35, 15])[0]
        potholes.append(Pothole(distance_m=distance, severity=severity))
    return potholes


def road_frames(
    device: SimDevice,
    potholes: list[Pothole],
    length_m: float,
    start_ms: int,
    impact_scale: float,
    rng: random.Random,
) -> list[tuple[MotionFrame, float]]:
    """Accelerometer frames for one pass, with the distance travelled at each frame."""
    frames = []
    pending = sorted(potholes, key=lambda p: p.distance_m)
    distance = 0.0
    t_ms = start_ms
    while distance < length_m:
        az = STANDARD_GRAVITY + rng.gauss(0.0, 0.15)
        if pending and distance >= pending[0].distance_m:
            hit = pending.pop(0)
            az += _IMPACT_MPS2[hit.severity] * impact_scale * rng.uniform(0.9, 1.1)
        frame = MotionFrame(timestamp_ms=t_ms, ax=rng.gauss(0.0, 0.1),
                            ay=rng.gauss(0.0, 0.1), az=az)
        frames.append((frame, distance))
        distance += device.speed_mps * FRAME_PERIOD_MS / 1000
        t_ms += FRAME_PERIOD_MS
    return frames


def gps_fix(start: tuple[float, float], end: tuple[float, float], length_m: float,
            distance: float, speed_mps: float, timestamp_ms: int,
            rng: random.Random) -> LocationFix:
    lat, lon = interpolate(start, end, min(distance / length_m, 1.0))
    # ~2 m of receiver noise
    lat += rng.gauss(0.0, 2.0 / 111_000)
    lon += rng.gauss(0.0, 2.0 / (111_000 * math.cos(math.radians(lat))))
    return LocationFix(timestamp_ms=timestamp_ms, latitude=lat, longitude=lon,
                       speed_mps=speed_mps)


async def run_device(device: SimDevice, args: argparse.Namespace, potholes: list[Pothole],
                     length_m: float, client: httpx.AsyncClient | None) -> None:
    """Drive one device over the route and wait for its uploads."""
    rng = random.Random(f"{args.seed}:{device.reporter_id}")
    if client is None:
        uploader = LoggingUploadService(device.reporter_id)
    else:
        uploader = HttpUploadService(args.server, reporter_id=device.reporter_id,
                                     client=client)

    detector = RuleBasedDetector(vehicle_type=args.vehicle,
                                 minimal_filtering=args.minimal_filtering)
    # Samples are pushed with handle_fix/handle_frame; the services stay idle.
    orchestrator = DetectionOrchestrator(
        sensors=ReplaySensorService(()),
        location=NullLocationService(),
        uploader=uploader,
        detector=detector,
        mode=DetectorMode(args.mode),
    )
    await orchestrator.start()

    impact_scale = _BIKE_SCALE if args.vehicle == "bike" else 1.0
    start_ms = int(time.time() * 1000)
    frames = road_frames(device, potholes, length_m, start_ms, impact_scale, rng)

    for frame, distance in frames:
        if (frame.timestamp_ms - start_ms) % FIX_PERIOD_MS == 0:
            orchestrator.handle_fix(gps_fix(args.start, args.end, length_m, distance,
                                            device.speed_mps, frame.timestamp_ms, rng))
        event = orchestrator.handle_frame(frame)
        if event is not None:
            device.events += 1
            device.severities.append(int(event.severity))

        if args.realtime:
            await asyncio.sleep(FRAME_PERIOD_MS / 1000)
        elif orchestrator.state.frames_processed % 50 == 0:
            await asyncio.sleep(0)

    device.frames = orchestrator.state.frames_processed
    await orchestrator.stop()


async def report_server(client: httpx.AsyncClient, server: str) -> None:
    try:
        stats = (await client.get(f"{server}/api/v1/stats")).json()
        potholes = (await client.get(f"{server}/api/v1/potholes")).json()
    except httpx.HTTPError as e:
        print(f"\nCould not read server state: {e}")
        return

    print("\nServer stats:")
    print(f"  Detections received: {stats['detections_received']}")
    print(f"  Detections stored: {stats['detections_stored']}")
    print(f"  Verified potholes: {stats['potholes_verified']}")
    print(f"  Active reporters: {stats['active_reporters']['total']}")
    print(f"  Queue depth: {stats['queue_depth']}")
    for feature in potholes["features"]:
        props = feature["properties"]
        lon, lat = feature["geometry"]["coordinates"]
        print(f"  {props['cell_key']}  {lat:.5f},{lon:.5f}  "
              f"severity={props['severity']} reports={props['report_count']} "
              f"reporters={props['reporters']}")


async def run_simulation(args: argparse.Namespace) -> None:
    """Run the full simulation."""
    rng = random.Random(args.seed)
    length_m = route_length_m(args.start, args.end)
    potholes = place_potholes(args.potholes, length_m, rng)
    devices = [
        SimDevice(reporter_id=str(uuid.UUID(int=rng.getrandbits(128))),
                  speed_mps=rng.uniform(*args.speed_range))
        for _ in range(args.devices)
    ]

    print(f"Starting simulation: {args.devices} {args.vehicle} devices, {len(potholes)} potholes")
    print(f"  Route: {args.start[0]:.5f},{args.start[1]:.5f} -> "
          f"{args.end[0]:.5f},{args.end[1]:.5f} ({length_m:.0f} m)")
    for p in potholes:
        lat, lon = interpolate(args.start, args.end, p.distance_m / length_m)
        print(f"    {lat:.5f},{lon:.5f}  {p.severity.label}")
    print(f"  Server: {'(dry run)' if args.dry_run else args.server}")
    print()

    start = time.monotonic()
    if args.dry_run:
        await asyncio.gather(*(run_device(d, args, potholes, length_m, None) for d in devices))
    else:
        async with httpx.AsyncClient(timeout=10.0) as client:
            await asyncio.gather(*(run_device(d, args, potholes, length_m, client)
                                   for d in devices))
            elapsed = time.monotonic() - start
            _print_devices(devices, elapsed)
            await report_server(client, args.server)
        return

    _print_devices(devices, time.monotonic() - start)


def _print_devices(devices: list[SimDevice], elapsed: float) -> None:
    print(f"\nSimulation complete in {elapsed:.1f}s")
    for d in devices:
        print(f"  {d.reporter_id[:8]}  {d.speed_mps * 3.6:5.1f} km/h  "
              f"frames={d.frames} events={d.events} severities={d.severities}")


def _parse_point(value: str) -> tuple[float, float]:
    lat, lon = value.split(",")
    return float(lat), float(lon)


def main():
    parser = argparse.ArgumentParser(description="RoadSense crowd simulator")
    parser.add_argument("--server", default="http://localhost:8000", help="Server URL")
    parser.add_argument("--devices", type=int, default=4, help="Number of simulated devices")
    parser.add_argument("--potholes", type=int, default=5, help="Potholes along the route")
    parser.add_argument("--start", type=_parse_point, default="45.75800,4.83200",
                        help="Route start lat,lon (default: Lyon)")
    parser.add_argument("--end", type=_parse_point, default="45.77600,4.83600",
                        help="Route end lat,lon")
    parser.add_argument("--vehicle", choices=["car", "bike"], default="car")
    parser.add_argument("--mode", choices=[m.value for m in DetectorMode],
                        default=DetectorMode.RULE_ONLY.value)
    parser.add_argument("--minimal-filtering", action="store_true",
                        help="Use raw magnitude deviation instead of filtered vertical acceleration")
    parser.add_argument("--speed-range", type=float, nargs=2, default=(8.0, 14.0),
                        metavar=("MIN", "MAX"), help="Device speed range in m/s")
    parser.add_argument("--realtime", action="store_true", help="Pace frames at 50 Hz")
    parser.add_argument("--dry-run", action="store_true", help="Log events instead of uploading")
    parser.add_argument("--seed", type=int, default=7, help="Random seed")

    args = parser.parse_args()
    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
