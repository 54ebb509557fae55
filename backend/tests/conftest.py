"""Shared fixtures: a controllable clock, an in-memory directory and a straight test route."""

import datetime

import pytest
import pytest_asyncio

from eta_engine.config import Settings
from eta_engine.core.broadcaster import Broadcaster
from eta_engine.core.bus_tracker import BusTracker
from eta_engine.core.route_index import RouteStop
from eta_engine.core.telemetry import GPSFix

BASE_LAT = 56.84
LON = 60.6
# Degrees of latitude per km on the haversine sphere (R = 6371 km)
DEG_PER_KM = 1 / 111.19492664

T0 = datetime.datetime(2026, 3, 2, 8, 0, tzinfo=datetime.timezone.utc)


def lat_at(km: float) -> float:
    """Latitude ``km`` north of the first stop along the test meridian."""
    return BASE_LAT + km * DEG_PER_KM


# S1 at 0 km, S2 at 5 km, S3 at 12 km, all due north
ROUTE_STOPS = [
    RouteStop(stop_id="S1", lat=lat_at(0.0), lon=LON, name="Depot"),
    RouteStop(stop_id="S2", lat=lat_at(5.0), lon=LON, name="Market"),
    RouteStop(stop_id="S3", lat=lat_at(12.0), lon=LON, name="Terminal"),
]


class FakeClock:
    def __init__(self, start: datetime.datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> datetime.datetime:
        self.now += datetime.timedelta(seconds=seconds)
        return self.now


class FakeDirectory:
    def __init__(self, routes=None, schedules=None) -> None:
        self.routes = routes or {}
        self.schedules = schedules or {}
        self.stop_calls = []

    async def get_route_stops(self, route_id):
        self.stop_calls.append(route_id)
        return list(self.routes.get(route_id, []))

    async def get_scheduled_times(self, route_id, stop_id):
        return self.schedules.get((route_id, stop_id))


def make_fix(bus_id="B1", km=0.0, speed=30.0, at=None, accuracy=5.0, route_id=None, lat=None, lon=LON) -> GPSFix:
    return GPSFix(
        bus_id=bus_id,
        lat=lat_at(km) if lat is None else lat,
        lon=lon,
        speed_kmh=speed,
        heading_deg=0.0,
        accuracy_m=accuracy,
        client_timestamp=at or T0,
        route_id=route_id,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(debounce_seconds=0, redis_url="redis://unused")


@pytest.fixture
def directory():
    return FakeDirectory(routes={"R1": ROUTE_STOPS})


@pytest.fixture
def broadcaster(test_settings):
    # Never connected: events are delivered to local queues only
    return Broadcaster(queue_size=test_settings.subscriber_queue_size)


@pytest_asyncio.fixture
async def tracker(directory, broadcaster, test_settings, clock):
    t = BusTracker(directory, broadcaster, test_settings, clock)
    yield t
    await t.close()


def drain_queue(queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items
