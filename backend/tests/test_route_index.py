"""Tests for route geometry building and projection."""

import pytest

from conftest import LON, ROUTE_STOPS, lat_at
from eta_engine.core.errors import InvalidRoute, NoRouteData
from eta_engine.core.route_index import RouteGeometryIndex, RouteStop, haversine_km


def test_haversine_one_degree_latitude():
    assert haversine_km(56.0, 60.0, 57.0, 60.0) == pytest.approx(111.195, abs=0.01)


def test_build_cumulative_distances():
    """Stop distances accumulate along the stop sequence."""
    index = RouteGeometryIndex()
    snap = index.build("R1", ROUTE_STOPS)
    assert [p.stop_id for p in snap.points] == ["S1", "S2", "S3"]
    assert [p.order for p in snap.points] == [0, 1, 2]
    assert snap.points[0].distance_from_start_km == 0.0
    assert snap.points[1].distance_from_start_km == pytest.approx(5.0, abs=1e-6)
    assert snap.total_km == pytest.approx(12.0, abs=1e-6)


def test_build_rejects_short_route():
    index = RouteGeometryIndex()
    with pytest.raises(InvalidRoute):
        index.build("R1", ROUTE_STOPS[:1])
    assert index.get("R1") is None


def test_build_rejects_bad_coordinates():
    index = RouteGeometryIndex()
    stops = [RouteStop("A", 10.0, 10.0), RouteStop("B", 95.0, 10.0)]
    with pytest.raises(InvalidRoute):
        index.build("R1", stops)


def test_rebuild_bumps_version():
    """Replacing a route swaps in a new snapshot; old holders keep theirs."""
    index = RouteGeometryIndex()
    first = index.build("R1", ROUTE_STOPS)
    second = index.build("R1", ROUTE_STOPS[:2])
    assert second.version > first.version
    assert index.get("R1") is second
    assert first.total_km == pytest.approx(12.0, abs=1e-6)


def test_project_point_on_route():
    index = RouteGeometryIndex()
    index.build("R1", ROUTE_STOPS)
    proj = index.project("R1", lat_at(3.0), LON)
    assert proj.nearest_segment_index == 0
    assert proj.distance_along_route_km == pytest.approx(3.0, abs=1e-3)
    assert proj.perpendicular_offset_km == pytest.approx(0.0, abs=1e-6)


def test_project_point_beside_route():
    """A point off to the side projects to its foot on the route."""
    index = RouteGeometryIndex()
    index.build("R1", ROUTE_STOPS)
    proj = index.project("R1", lat_at(7.0), LON + 0.002)
    assert proj.nearest_segment_index == 1
    assert proj.distance_along_route_km == pytest.approx(7.0, abs=1e-3)
    assert 0.1 < proj.perpendicular_offset_km < 0.15


def test_project_before_start_clamps_to_zero():
    index = RouteGeometryIndex()
    index.build("R1", ROUTE_STOPS)
    proj = index.project("R1", lat_at(-1.0), LON)
    assert proj.nearest_segment_index == 0
    assert proj.distance_along_route_km == pytest.approx(0.0, abs=1e-6)


def test_project_past_end_clamps_to_total():
    index = RouteGeometryIndex()
    snap = index.build("R1", ROUTE_STOPS)
    proj = index.project("R1", lat_at(15.0), LON)
    assert proj.nearest_segment_index == 1
    assert proj.distance_along_route_km == pytest.approx(snap.total_km, abs=1e-6)


def test_project_prefers_earlier_segment_on_loop():
    """Out-and-back route: a point on the shared corridor lands on the first leg."""
    index = RouteGeometryIndex()
    stops = [
        RouteStop("A", lat_at(0.0), LON),
        RouteStop("B", lat_at(2.0), LON),
        RouteStop("C", lat_at(0.0), LON + 0.0001),
    ]
    index.build("LOOP", stops)
    # Slightly closer to the return leg, but not by the skip-ahead margin
    proj = index.project("LOOP", lat_at(1.0), LON + 0.00003)
    assert proj.nearest_segment_index == 0
    assert proj.distance_along_route_km == pytest.approx(1.0, abs=1e-2)


def test_project_unknown_route():
    with pytest.raises(NoRouteData):
        RouteGeometryIndex().project("nope", 0.0, 0.0)


def test_routes_serving_stop():
    index = RouteGeometryIndex()
    index.build("R1", ROUTE_STOPS)
    index.build("R2", [ROUTE_STOPS[1], RouteStop("X", lat_at(8.0), LON + 0.05)])
    assert index.routes_serving("S2") == {"R1", "R2"}
    assert index.routes_serving("S3") == {"R1"}
    assert index.routes_serving("nope") == set()


def test_stop_index_at_distance():
    snap = RouteGeometryIndex().build("R1", ROUTE_STOPS)
    assert snap.stop_index_at(0.0) == 0
    assert snap.stop_index_at(4.99) == 0
    assert snap.stop_index_at(6.0) == 1
    assert snap.stop_index("S3") == 2
    assert snap.stop_index("nope") is None
