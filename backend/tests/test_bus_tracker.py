"""End-to-end tests for the fix -> progress -> ETA -> broadcast pipeline."""

import datetime

import orjson
import pytest

from conftest import LON, T0, FakeDirectory, drain_queue, lat_at, make_fix
from eta_engine.config import Settings
from eta_engine.core.bus_state import BusStatus
from eta_engine.core.bus_tracker import BusTracker
from eta_engine.core.errors import BusNotFound
from eta_engine.core.eta_calculator import EtaMethod
from eta_engine.core.route_index import RouteStop
from eta_engine.core.telemetry import RejectReason


def _at(seconds):
    return T0 + datetime.timedelta(seconds=seconds)


def _events(queue):
    return [orjson.loads(d) for d in drain_queue(queue)]


async def _drive_to_3km(tracker, clock, bus_id="B1"):
    """Two steady fixes, 12 s apart at 30 km/h, ending 3 km along R1."""
    assert tracker.ingest(make_fix(bus_id, km=2.9, at=_at(0), route_id="R1")).accepted
    clock.advance(12)
    assert tracker.ingest(make_fix(bus_id, km=3.0, at=_at(12), route_id="R1")).accepted
    await tracker.drain()


@pytest.mark.asyncio
async def test_gps_eta_for_moving_bus(tracker, clock):
    await _drive_to_3km(tracker, clock)

    progress = tracker.get_bus("B1")
    assert progress.status == BusStatus.ACTIVE
    assert progress.projected_distance_km == pytest.approx(3.0, abs=1e-3)

    etas = tracker.get_bus_etas("B1")
    assert [e.stop_id for e in etas] == ["S2", "S3"]
    assert {e.method for e in etas} == {EtaMethod.GPS_BASED}
    assert etas[0].eta_minutes == pytest.approx(4.0, abs=0.05)
    assert etas[1].eta_minutes == pytest.approx(18.0, abs=0.05)


@pytest.mark.asyncio
async def test_silent_bus_goes_offline_with_historical_eta(tracker, broadcaster, clock):
    queue = broadcaster.register("rider")
    broadcaster.subscribe("rider", "stop:S2")
    await _drive_to_3km(tracker, clock)
    drain_queue(queue)

    clock.advance(200)
    await tracker.monitor.sweep()
    await tracker.drain()

    assert tracker.get_bus("B1").status == BusStatus.OFFLINE
    etas = tracker.get_bus_etas("B1")
    assert {e.method for e in etas} == {EtaMethod.HISTORICAL}
    assert all(e.confidence_score < 0.5 for e in etas)

    [event] = _events(queue)
    assert event["type"] == "eta"
    assert event["payload"]["method"] == "historical"
    assert event["payload"]["bus_status"] == "offline"
    assert event["payload"]["confidence"] == "low"


@pytest.mark.asyncio
async def test_teleport_fix_rejected_without_side_effects(tracker, broadcaster, clock):
    await _drive_to_3km(tracker, clock)
    before = tracker.get_bus("B1")
    published = broadcaster.published

    clock.advance(2)
    result = tracker.ingest(make_fix(km=8.0, at=_at(14), route_id="R1"))
    await tracker.drain()

    assert not result.accepted
    assert result.reason == RejectReason.IMPLAUSIBLE_SPEED
    assert tracker.get_bus("B1") is before
    assert broadcaster.published == published


@pytest.mark.asyncio
async def test_stop_subscriber_sees_only_stop_events(tracker, broadcaster, clock):
    queue = broadcaster.register("rider")
    broadcaster.subscribe("rider", "stop:S3")

    await _drive_to_3km(tracker, clock)

    events = _events(queue)
    assert events
    assert {e["topic"] for e in events} == {"stop:S3"}
    assert {e["type"] for e in events} == {"eta"}
    assert events[-1]["payload"]["method"] == "gps_based"
    assert events[-1]["payload"]["eta_minutes"] == pytest.approx(18.0, abs=0.1)


@pytest.mark.asyncio
async def test_route_subscriber_sees_positions_in_order(tracker, broadcaster, clock):
    queue = broadcaster.register("map")
    broadcaster.subscribe("map", "route:R1")

    for i in range(5):
        tracker.ingest(make_fix(km=1.0 + 0.1 * i, at=_at(12 * i), route_id="R1"))
        clock.advance(12)
    await tracker.drain()

    events = _events(queue)
    positions = [e["payload"]["projected_distance_km"] for e in events if e["type"] == "position"]
    assert positions == sorted(positions)
    assert positions[-1] == pytest.approx(1.4, abs=1e-3)
    assert events[0]["type"] == "status"
    assert events[0]["payload"]["status"] == "active"


@pytest.mark.asyncio
async def test_small_eta_drift_not_rebroadcast(tracker, broadcaster, clock):
    queue = broadcaster.register("rider")
    broadcaster.subscribe("rider", "stop:S2")
    await _drive_to_3km(tracker, clock)
    drain_queue(queue)

    # Same pace: predicted arrival time at S2 does not move
    clock.advance(12)
    tracker.ingest(make_fix(km=3.1, at=_at(24), route_id="R1"))
    await tracker.drain()

    assert queue.empty()


@pytest.mark.asyncio
async def test_passing_a_stop_notifies_its_subscribers(tracker, broadcaster, clock):
    queue = broadcaster.register("rider")
    broadcaster.subscribe("rider", "stop:S2")
    await _drive_to_3km(tracker, clock)
    drain_queue(queue)

    clock.advance(90)
    assert tracker.ingest(make_fix(km=5.2, at=_at(102), route_id="R1")).accepted
    await tracker.drain()

    events = _events(queue)
    assert [e["type"] for e in events] == ["passed"]
    assert events[0]["payload"] == {"bus_id": "B1", "route_id": "R1", "stop_id": "S2"}
    assert [e.stop_id for e in tracker.get_bus_etas("B1")] == ["S3"]


@pytest.mark.asyncio
async def test_resubmitted_fix_changes_nothing(tracker, clock):
    await _drive_to_3km(tracker, clock)
    before = tracker.get_bus("B1")

    result = tracker.ingest(make_fix(km=3.0, at=_at(12), route_id="R1"))
    await tracker.drain()

    assert result.reason == RejectReason.DUPLICATE_TIMESTAMP
    assert tracker.get_bus("B1") is before


@pytest.mark.asyncio
async def test_stop_etas_across_buses_sorted(tracker, clock):
    await _drive_to_3km(tracker, clock, "B1")
    tracker.ingest(make_fix("B2", km=0.9, at=_at(0), route_id="R1"))
    clock.advance(12)
    tracker.ingest(make_fix("B2", km=1.0, at=_at(12), route_id="R1"))
    await tracker.drain()

    etas = tracker.get_etas_for_stop("S2")
    assert [e.bus_id for e in etas] == ["B1", "B2"]
    assert etas[0].eta_minutes < etas[1].eta_minutes
    assert tracker.get_etas_for_stop("S2", route_filter="R9") == []
    assert tracker.get_etas_for_stop("nowhere") == []


@pytest.mark.asyncio
async def test_fix_without_assignment_is_rejected(tracker, clock):
    result = tracker.ingest(make_fix(at=_at(0)))
    assert not result.accepted
    assert result.reason == RejectReason.NO_ASSIGNMENT
    await tracker.drain()
    assert tracker.store.find("B1") is None

    tracker.assign("B1", "R1")
    clock.advance(12)
    assert tracker.ingest(make_fix(km=0.1, at=_at(12))).accepted
    await tracker.drain()
    assert tracker.get_bus("B1").route_id == "R1"


@pytest.mark.asyncio
async def test_unassigned_buses_leave_no_state(tracker, clock):
    for i in range(50):
        tracker.ingest(make_fix(bus_id=f"X{i}", at=_at(i)))
    await tracker.drain()

    diag = tracker.get_diagnostics()
    assert diag["workers"] == 0
    assert diag["telemetry"]["accepted"] == 0
    assert diag["telemetry"]["rejected"] == {"NoAssignment": 50}
    assert tracker.gateway.last_accepted("X0") is None
    assert len(tracker.store) == 0


@pytest.mark.asyncio
async def test_sweep_keeps_bus_with_fix_waiting(tracker, test_settings, clock):
    await _drive_to_3km(tracker, clock)
    clock.advance(test_settings.offline_after_seconds + 1)
    await tracker.check_staleness()
    await tracker.drain()
    assert tracker.get_bus("B1").status == BusStatus.OFFLINE

    clock.advance(test_settings.offline_retention_seconds + 1)
    assert tracker.ingest(make_fix(km=3.0, at=clock.now, route_id="R1")).accepted
    # The sweep runs before the worker has applied the fix
    await tracker.check_staleness()
    assert tracker.store.find("B1") is not None

    await tracker.drain()
    assert tracker.get_bus("B1").status == BusStatus.ACTIVE
    assert tracker.gateway.last_accepted("B1") is not None


@pytest.mark.asyncio
async def test_offline_bus_evicted_after_retention(tracker, test_settings, clock):
    await _drive_to_3km(tracker, clock)
    clock.advance(test_settings.offline_after_seconds + 1)
    await tracker.check_staleness()
    await tracker.drain()
    clock.advance(test_settings.offline_retention_seconds + 1)
    await tracker.check_staleness()

    assert tracker.store.find("B1") is None
    assert tracker.get_diagnostics()["workers"] == 0
    assert tracker.gateway.last_accepted("B1") is None
    assert tracker.store._locks == {}


@pytest.mark.asyncio
async def test_unknown_route_tracks_position_without_etas(broadcaster, test_settings, clock):
    directory = FakeDirectory()
    tracker = BusTracker(directory, broadcaster, test_settings, clock)
    try:
        tracker.ingest(make_fix(at=_at(0), route_id="R404"))
        await tracker.drain()

        assert tracker.get_bus("B1").route_id == "R404"
        assert not tracker.get_bus("B1").has_projection
        assert tracker.get_bus_etas("B1") == []

        # Retried at most once per retry window
        clock.advance(12)
        tracker.ingest(make_fix(km=0.1, at=_at(12), route_id="R404"))
        await tracker.drain()
        assert directory.stop_calls == ["R404"]
    finally:
        await tracker.close()


@pytest.mark.asyncio
async def test_end_assignment_withdraws_bus(tracker, broadcaster, clock):
    queue = broadcaster.register("rider")
    broadcaster.subscribe("rider", "stop:S3")
    await _drive_to_3km(tracker, clock)
    drain_queue(queue)

    assert await tracker.end_assignment("B1")

    with pytest.raises(BusNotFound):
        tracker.get_bus("B1")
    assert tracker.get_etas_for_stop("S3") == []
    [event] = _events(queue)
    assert event["type"] == "status"
    assert event["payload"]["status"] == "ended"
    assert not await tracker.end_assignment("B1")


@pytest.mark.asyncio
async def test_route_rebuild_replaces_bus(tracker, clock):
    await _drive_to_3km(tracker, clock)

    # Route now starts 2 km further north
    stops = [
        RouteStop("S0", lat_at(2.0), LON),
        RouteStop("S2", lat_at(5.0), LON),
        RouteStop("S3", lat_at(12.0), LON),
    ]
    snapshot = await tracker.register_route("R1", stops)
    await tracker.drain()

    assert snapshot.version == 2
    assert tracker.get_bus("B1").projected_distance_km == pytest.approx(1.0, abs=1e-3)
    assert tracker.get_bus_etas("B1")[0].eta_minutes == pytest.approx(4.0, abs=0.05)


@pytest.mark.asyncio
async def test_debounced_recompute_coalesces_fixes(broadcaster, clock):
    settings = Settings(debounce_seconds=5)
    tracker = BusTracker(FakeDirectory(routes={"R1": []}), broadcaster, settings, clock)
    await tracker.register_route("R1", [
        RouteStop("S1", lat_at(0.0), LON),
        RouteStop("S2", lat_at(5.0), LON),
    ])
    queue = broadcaster.register("map")
    broadcaster.subscribe("map", "route:R1")
    try:
        for i in range(3):
            tracker.ingest(make_fix(km=1.0 + 0.1 * i, at=_at(12 * i), route_id="R1"))
            clock.advance(12)
        await tracker.drain()
        assert not any(e["type"] == "position" for e in _events(queue))

        await tracker.flush()
        positions = [e for e in _events(queue) if e["type"] == "position"]
        assert len(positions) == 1
        assert positions[0]["payload"]["projected_distance_km"] == pytest.approx(1.2, abs=1e-3)
    finally:
        await tracker.close()


@pytest.mark.asyncio
async def test_diagnostics_counts(tracker, clock):
    await _drive_to_3km(tracker, clock)
    tracker.ingest(make_fix(km=3.0, at=_at(12), route_id="R1"))

    diag = tracker.get_diagnostics()
    assert diag["buses"] == 1
    assert diag["by_status"] == {"active": 1}
    assert diag["telemetry"] == {"accepted": 2, "rejected": {"DuplicateTimestamp": 1}}
    assert diag["routes"][0]["route_id"] == "R1"
    assert diag["routes"][0]["stops"] == 3
    assert diag["segment_speeds"] == {"segments": 0, "samples": 0, "tracked_buses": 0}


@pytest.mark.asyncio
async def test_route_diagnostics(tracker, clock):
    await _drive_to_3km(tracker, clock)

    diag = tracker.route_diagnostics("R1")
    assert diag["buses"] == 1
    assert diag["total_km"] == pytest.approx(12.0, abs=1e-3)
    assert tracker.route_diagnostics("R9") is None


@pytest.mark.asyncio
async def test_buses_near_point(tracker, clock):
    await _drive_to_3km(tracker, clock)
    assert tracker.ingest(make_fix("B2", km=8.0, at=clock.now, route_id="R1")).accepted
    await tracker.drain()

    nearby = tracker.get_buses_near(lat_at(4.0), LON)
    assert [(p.bus_id, round(d, 2)) for p, d in nearby] == [("B1", 1.0), ("B2", 4.0)]
    assert [p.bus_id for p, _ in tracker.get_buses_near(lat_at(4.0), LON, radius_km=2.0)] == ["B1"]


@pytest.mark.asyncio
async def test_buses_near_skips_old_fixes(tracker, test_settings, clock):
    await _drive_to_3km(tracker, clock)
    clock.advance(test_settings.nearby_max_age_seconds + 1)
    assert tracker.get_buses_near(lat_at(3.0), LON) == []


@pytest.mark.asyncio
async def test_passing_stops_teaches_segment_speed(tracker, clock):
    points = [(4.0, 0), (6.0, 240), (10.0, 720), (11.5, 900)]
    for km, seconds in points:
        clock.now = _at(seconds)
        assert tracker.ingest(make_fix(km=km, at=_at(seconds), route_id="R1")).accepted
        await tracker.drain()
    # S3 sits at 12 km; the last fix before it is 0.5 km short
    clock.now = _at(960)
    assert tracker.ingest(make_fix(km=12.4, at=_at(960), route_id="R1")).accepted
    await tracker.drain()

    assert tracker.segment_speeds.speed("R1", "S2", "S3", clock.now) == pytest.approx(30.0, abs=0.5)
    assert tracker.get_diagnostics()["segment_speeds"]["samples"] == 1

    await tracker.end_assignment("B1")
    assert tracker.segment_speeds.stats()["tracked_buses"] == 0


@pytest.mark.asyncio
async def test_drain_waits_for_every_queued_fix(tracker, clock):
    await tracker.drain()

    for i in range(5):
        clock.now = _at(12 * i)
        assert tracker.ingest(make_fix(km=1.0 + 0.1 * i, at=_at(12 * i), route_id="R1")).accepted
    await tracker.drain()

    assert tracker.get_bus("B1").projected_distance_km == pytest.approx(1.4, abs=1e-3)
    assert not tracker._has_pending("B1")


@pytest.mark.asyncio
async def test_drain_not_blocked_by_ended_bus(tracker, clock):
    assert tracker.ingest(make_fix(km=1.0, at=_at(0), route_id="R1")).accepted
    assert tracker.ingest(make_fix("B2", km=2.0, at=_at(0), route_id="R1")).accepted
    await tracker.end_assignment("B1")

    await tracker.drain()

    assert tracker.store.find("B1") is None
    assert tracker.get_bus("B2").projected_distance_km == pytest.approx(2.0, abs=1e-3)
