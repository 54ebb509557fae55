"""Arrival predictions for the stops ahead of a bus.

One method is chosen per bus snapshot and applied to every remaining stop,
so a single response never mixes methods for the same bus.
"""

import datetime
import enum
import logging
import statistics
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from eta_engine.config import Settings, settings as default_settings
from eta_engine.core.bus_state import BusProgress, BusStatus
from eta_engine.core.errors import NoRouteData
from eta_engine.core.route_index import RoutePoint, RouteSnapshot
from eta_engine.core.segment_speeds import SegmentSpeedTable
from eta_engine.core.telemetry import GPSFix

logger = logging.getLogger(__name__)

GPS_CONFIDENCE_MAX = 0.95
GPS_CONFIDENCE_MIN = 0.8
HYBRID_CONFIDENCE_MIN = 0.5
HYBRID_CONFIDENCE_MAX = 0.75
# Historical confidence by how much schedule data backs the estimate
HISTORICAL_SEGMENT_CONFIDENCE = 0.45
HISTORICAL_TIMETABLE_CONFIDENCE = 0.4
HISTORICAL_DEFAULT_CONFIDENCE = 0.3
# GPS weight for a fresh but unreliable signal (single fix, idle, volatile)
UNSTEADY_GPS_WEIGHT = 0.5


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class EtaMethod(str, enum.Enum):
    GPS_BASED = "gps_based"
    HYBRID = "hybrid"
    HISTORICAL = "historical"


@dataclass(frozen=True)
class ScheduledTimes:
    """Timetable for one stop of a route.

    ``scheduled_arrival_offsets`` maps stop IDs of the route to minutes
    after ``departure`` from the first stop.
    """

    departure: datetime.datetime | None = None
    scheduled_arrival_offsets: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class Eta:
    bus_id: str
    route_id: str
    stop_id: str
    estimated_arrival_time: datetime.datetime
    eta_minutes: float
    distance_km: float
    confidence_score: float
    method: EtaMethod
    computed_at: datetime.datetime
    bus_status: BusStatus
    arriving_now: bool = False


@dataclass(frozen=True)
class MethodChoice:
    method: EtaMethod
    gps_weight: float


def confidence_band(score: float) -> str:
    if score >= GPS_CONFIDENCE_MIN:
        return "high"
    if score >= HYBRID_CONFIDENCE_MIN:
        return "medium"
    return "low"


def speed_is_volatile(fixes: list[GPSFix], max_cv: float) -> bool:
    """True if the recent reported speeds vary too much to extrapolate."""
    if len(fixes) < 3:
        return False
    speeds = [f.speed_kmh for f in fixes]
    mean = statistics.fmean(speeds)
    if mean <= 0:
        return False
    return statistics.pstdev(speeds) / mean > max_cv


def select_method(progress: BusProgress, now: datetime.datetime, settings: Settings) -> MethodChoice:
    staleness = (now - progress.last_updated_at).total_seconds()

    if progress.status == BusStatus.OFFLINE or staleness > settings.historical_after_seconds:
        return MethodChoice(EtaMethod.HISTORICAL, 0.0)

    if staleness > settings.hybrid_after_seconds:
        span = settings.historical_after_seconds - settings.hybrid_after_seconds
        weight = 1.0 - (staleness - settings.hybrid_after_seconds) / span if span > 0 else 0.0
        return MethodChoice(EtaMethod.HYBRID, min(1.0, max(0.0, weight)))

    fresh = [
        f for f in progress.recent_fixes
        if (now - f.received_at).total_seconds() <= settings.gps_fresh_window_seconds
    ]
    if (
        progress.status == BusStatus.ACTIVE
        and len(fresh) >= 2
        and not speed_is_volatile(fresh, settings.speed_volatility_cv)
    ):
        return MethodChoice(EtaMethod.GPS_BASED, 1.0)

    return MethodChoice(EtaMethod.HYBRID, UNSTEADY_GPS_WEIGHT)


class EtaCalculator:
    """Speed-, schedule- and blend-based ETAs along the route's stop sequence."""

    def __init__(
        self,
        settings: Settings = default_settings,
        clock: Callable[[], datetime.datetime] = _utcnow,
        segment_speeds: SegmentSpeedTable | None = None,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._segment_speeds = segment_speeds
        # bus_id -> (snapshot key, computed_at, etas)
        self._cache: dict[str, tuple[tuple, datetime.datetime, list[Eta]]] = {}

    def estimate(
        self,
        progress: BusProgress,
        route: RouteSnapshot | None,
        schedule: Mapping[str, ScheduledTimes] | None = None,
        method: EtaMethod | None = None,
    ) -> list[Eta]:
        """ETAs for every stop still ahead of the bus.

        Raises ``NoRouteData`` if the bus cannot be placed on its route.
        Passing ``method`` forces that method instead of selecting one.
        """
        if route is None or route.route_id != progress.route_id or not progress.has_projection:
            raise NoRouteData(progress.route_id)

        now = self._clock()
        key = (progress.last_updated_at, progress.status, route.version)
        if method is None:
            cached = self._cache.get(progress.bus_id)
            if cached is not None:
                cached_key, computed_at, etas = cached
                age = (now - computed_at).total_seconds()
                if cached_key == key and age < self._settings.eta_cache_ttl_seconds:
                    return etas

        choice = MethodChoice(method, 1.0) if method is not None else select_method(progress, now, self._settings)
        etas = self._compute(progress, route, schedule or {}, choice, now)

        if method is None:
            self._cache[progress.bus_id] = (key, now, etas)
        return etas

    def invalidate(self, bus_id: str) -> None:
        self._cache.pop(bus_id, None)

    # ------------------------------------------------------------------

    def _compute(
        self,
        progress: BusProgress,
        route: RouteSnapshot,
        schedule: Mapping[str, ScheduledTimes],
        choice: MethodChoice,
        now: datetime.datetime,
    ) -> list[Eta]:
        results = []
        for point in route.points:
            remaining_km = point.distance_from_start_km - progress.projected_distance_km
            if remaining_km < -1e-9:
                continue  # already passed

            if choice.method == EtaMethod.GPS_BASED:
                minutes = self._gps_minutes(remaining_km, progress)
                confidence = self._gps_confidence(progress)
            elif choice.method == EtaMethod.HISTORICAL:
                minutes, confidence = self._historical(remaining_km, point, progress, route, schedule, now)
            else:
                gps_min = self._gps_minutes(remaining_km, progress)
                hist_min, _ = self._historical(remaining_km, point, progress, route, schedule, now)
                minutes = choice.gps_weight * gps_min + (1 - choice.gps_weight) * hist_min
                confidence = HYBRID_CONFIDENCE_MIN + (
                    HYBRID_CONFIDENCE_MAX - HYBRID_CONFIDENCE_MIN
                ) * choice.gps_weight

            arriving_now = remaining_km < self._settings.arrival_radius_km
            if arriving_now:
                minutes = 0.0

            results.append(Eta(
                bus_id=progress.bus_id,
                route_id=progress.route_id,
                stop_id=point.stop_id,
                estimated_arrival_time=now + datetime.timedelta(minutes=minutes),
                eta_minutes=minutes,
                distance_km=max(0.0, remaining_km),
                confidence_score=round(confidence, 3),
                method=choice.method,
                computed_at=now,
                bus_status=progress.status,
                arriving_now=arriving_now,
            ))
        return results

    def _gps_minutes(self, remaining_km: float, progress: BusProgress) -> float:
        speed = max(progress.smoothed_speed_kmh, self._settings.min_effective_speed_kmh)
        return remaining_km / speed * 60

    def _gps_confidence(self, progress: BusProgress) -> float:
        score = GPS_CONFIDENCE_MAX

        accuracy = progress.last_fix.accuracy_m
        if accuracy is None:
            score -= 0.05
        elif accuracy > 100:
            score -= 0.15
        elif accuracy > 50:
            score -= 0.1
        elif accuracy > 10:
            score -= 0.05

        # A near-stationary bus gives a shakier extrapolation
        floor = self._settings.min_effective_speed_kmh
        headroom = min(1.0, max(0.0, (progress.smoothed_speed_kmh - floor) / floor))
        score -= 0.05 * (1 - headroom)

        return min(GPS_CONFIDENCE_MAX, max(GPS_CONFIDENCE_MIN, score))

    def _historical(
        self,
        remaining_km: float,
        target: RoutePoint,
        progress: BusProgress,
        route: RouteSnapshot,
        schedule: Mapping[str, ScheduledTimes],
        now: datetime.datetime,
    ) -> tuple[float, float]:
        """Non-GPS minutes to ``target`` and the matching confidence.

        Learned and scheduled segment times are arrival-to-arrival, so they
        already cover the stops called at on the way. Only the default-speed
        fallback adds a dwell per intermediate stop.
        """
        minutes = self._segment_minutes(progress, target, route, schedule, now)
        if minutes is not None:
            return minutes, HISTORICAL_SEGMENT_CONFIDENCE

        times = schedule.get(target.stop_id)
        if times is not None and times.departure is not None:
            offset = times.scheduled_arrival_offsets.get(target.stop_id)
            if offset is not None:
                arrival = times.departure + datetime.timedelta(minutes=offset)
                minutes = (arrival - now).total_seconds() / 60
                if minutes >= 0:
                    return minutes, HISTORICAL_TIMETABLE_CONFIDENCE

        stops_between = max(0, target.order - progress.projected_stop_index - 1)
        minutes = (
            remaining_km / self._settings.default_schedule_speed_kmh * 60
            + stops_between * self._settings.dwell_minutes_per_stop
        )
        return minutes, HISTORICAL_DEFAULT_CONFIDENCE

    def _segment_minutes(
        self,
        progress: BusProgress,
        target: RoutePoint,
        route: RouteSnapshot,
        schedule: Mapping[str, ScheduledTimes],
        now: datetime.datetime,
    ) -> float | None:
        """Travel time summed segment by segment; None if any segment has no data."""
        start = progress.projected_stop_index
        if target.order <= start:
            return None

        minutes = 0.0
        for a, b in zip(route.points[start:target.order], route.points[start + 1:target.order + 1]):
            speed = self._segment_speed(route, a, b, schedule, now)
            if speed is None:
                return None
            km = b.distance_from_start_km - max(a.distance_from_start_km, progress.projected_distance_km)
            minutes += max(0.0, km) / speed * 60
        return minutes

    def _segment_speed(
        self,
        route: RouteSnapshot,
        a: RoutePoint,
        b: RoutePoint,
        schedule: Mapping[str, ScheduledTimes],
        now: datetime.datetime,
    ) -> float | None:
        """Observed speed for a -> b, else the speed the timetable implies."""
        if self._segment_speeds is not None:
            learned = self._segment_speeds.speed(route.route_id, a.stop_id, b.stop_id, now)
            if learned:
                return learned

        km = b.distance_from_start_km - a.distance_from_start_km
        for stop_id in (b.stop_id, a.stop_id):
            times = schedule.get(stop_id)
            if times is None:
                continue
            offsets = times.scheduled_arrival_offsets
            if a.stop_id in offsets and b.stop_id in offsets:
                sched_min = offsets[b.stop_id] - offsets[a.stop_id]
                if sched_min > 0 and km > 0:
                    return km / (sched_min / 60)
        return None
