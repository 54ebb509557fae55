"""Observed stop arrivals and the segment speeds learned from them.

Each time a bus is seen passing a stop, the arrival time is interpolated
between its two surrounding fixes. Two consecutive arrivals give one
travel-time sample for that stop-to-stop segment, folded into a running
average per (route, segment, time of day, weekday).
"""

import datetime
import logging
from dataclasses import dataclass, replace

from eta_engine.config import Settings, settings as default_settings
from eta_engine.core.bus_state import BusProgress
from eta_engine.core.route_index import RouteSnapshot

logger = logging.getLogger(__name__)


def time_of_day(at: datetime.datetime, utc_offset_hours: float = 0.0) -> str:
    hour = (at + datetime.timedelta(hours=utc_offset_hours)).hour
    if 6 <= hour < 10:
        return "morning_peak"
    if 17 <= hour < 20:
        return "evening_peak"
    if hour >= 22 or hour < 6:
        return "night"
    return "afternoon"


@dataclass(frozen=True)
class StopArrival:
    bus_id: str
    route_id: str
    route_version: int
    stop_id: str
    order: int
    arrived_at: datetime.datetime


@dataclass(frozen=True)
class SegmentSpeed:
    avg_speed_kmh: float
    avg_duration_seconds: float
    sample_count: int


class SegmentSpeedTable:
    """Running-average speeds between consecutive stops, learned in memory."""

    def __init__(self, settings: Settings = default_settings) -> None:
        self._settings = settings
        # (route, from_stop, to_stop, time_of_day, weekday) -> SegmentSpeed
        self._speeds: dict[tuple[str, str, str, str, int], SegmentSpeed] = {}
        # bus_id -> last stop the bus was seen arriving at
        self._last_arrival: dict[str, StopArrival] = {}

    def _slot(self, at: datetime.datetime) -> tuple[str, int]:
        local = at + datetime.timedelta(hours=self._settings.service_utc_offset_hours)
        return time_of_day(at, self._settings.service_utc_offset_hours), local.weekday()

    def observe(
        self, previous: BusProgress | None, progress: BusProgress, route: RouteSnapshot,
    ) -> list[StopArrival]:
        """Record the stops passed between two progress records of one bus."""
        if (
            previous is None
            or previous.route_id != progress.route_id
            or progress.route_id != route.route_id
            or not previous.has_projection
            or not progress.has_projection
        ):
            return []

        start = previous.projected_distance_km
        end = progress.projected_distance_km
        if end < start:
            # Re-placed behind its last arrival; the next segment sample would be bogus
            self._last_arrival.pop(progress.bus_id, None)
            return []
        elapsed = (progress.last_updated_at - previous.last_updated_at).total_seconds()
        if end == start or elapsed <= 0:
            return []

        arrivals = []
        for point in route.points:
            if start < point.distance_from_start_km <= end:
                fraction = (point.distance_from_start_km - start) / (end - start)
                arrival = StopArrival(
                    bus_id=progress.bus_id,
                    route_id=route.route_id,
                    route_version=route.version,
                    stop_id=point.stop_id,
                    order=point.order,
                    arrived_at=previous.last_updated_at + datetime.timedelta(seconds=elapsed * fraction),
                )
                self._record_arrival(arrival, route)
                arrivals.append(arrival)
        return arrivals

    def _record_arrival(self, arrival: StopArrival, route: RouteSnapshot) -> None:
        last = self._last_arrival.get(arrival.bus_id)
        self._last_arrival[arrival.bus_id] = arrival
        if (
            last is None
            or last.route_id != arrival.route_id
            or last.route_version != arrival.route_version
            or arrival.order != last.order + 1
        ):
            return

        duration_s = (arrival.arrived_at - last.arrived_at).total_seconds()
        km = route.points[arrival.order].distance_from_start_km - route.points[last.order].distance_from_start_km
        if duration_s <= 0 or km <= 0:
            return
        speed = km / (duration_s / 3600)
        if speed > self._settings.max_plausible_speed_kmh:
            return
        self.record(arrival.route_id, last.stop_id, arrival.stop_id, speed, duration_s, arrival.arrived_at)

    def record(
        self,
        route_id: str,
        from_stop_id: str,
        to_stop_id: str,
        speed_kmh: float,
        duration_seconds: float,
        at: datetime.datetime,
    ) -> SegmentSpeed:
        """Fold one observed traversal into the running average."""
        key = (route_id, from_stop_id, to_stop_id, *self._slot(at))
        current = self._speeds.get(key)
        if current is None:
            updated = SegmentSpeed(speed_kmh, duration_seconds, 1)
        else:
            n = current.sample_count + 1
            updated = replace(
                current,
                avg_speed_kmh=(current.avg_speed_kmh * current.sample_count + speed_kmh) / n,
                avg_duration_seconds=(current.avg_duration_seconds * current.sample_count + duration_seconds) / n,
                sample_count=n,
            )
        self._speeds[key] = updated
        logger.debug(
            "Route %s: segment %s -> %s now %.1f km/h over %d samples",
            route_id, from_stop_id, to_stop_id, updated.avg_speed_kmh, updated.sample_count,
        )
        return updated

    def speed(
        self, route_id: str, from_stop_id: str, to_stop_id: str, at: datetime.datetime,
    ) -> float | None:
        """Learned speed for a segment at this time of day.

        Prefers samples from the same weekday; otherwise pools every weekday
        observed in the same time-of-day slot.
        """
        slot, weekday = self._slot(at)
        exact = self._speeds.get((route_id, from_stop_id, to_stop_id, slot, weekday))
        if exact is not None and exact.sample_count >= self._settings.min_segment_samples:
            return exact.avg_speed_kmh

        pooled = []
        for day in range(7):
            stats = self._speeds.get((route_id, from_stop_id, to_stop_id, slot, day))
            if stats is not None:
                pooled.append(stats)
        samples = sum(s.sample_count for s in pooled)
        if samples < self._settings.min_segment_samples:
            return None
        return sum(s.avg_speed_kmh * s.sample_count for s in pooled) / samples

    def forget(self, bus_id: str) -> None:
        self._last_arrival.pop(bus_id, None)

    def stats(self) -> dict:
        return {
            "segments": len(self._speeds),
            "samples": sum(s.sample_count for s in self._speeds.values()),
            "tracked_buses": len(self._last_arrival),
        }

