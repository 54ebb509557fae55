"""Per-route stop sequences with cumulative distance and segment projection.

Each route is held as an immutable, versioned ``RouteSnapshot``. Rebuilding
a route swaps in a new snapshot, so readers never see a half-built route.
"""

import itertools
import logging
import math
from bisect import bisect_right
from dataclasses import dataclass

from shapely.geometry import LineString, Point

from eta_engine.core.errors import InvalidRoute, NoRouteData

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

# Kilometers per degree of latitude on the local projection plane
KM_PER_DEG = 111.32


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers between two lat/lon points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(a))


@dataclass(frozen=True)
class RouteStop:
    """A stop as delivered by the route directory, in traversal order."""

    stop_id: str
    lat: float
    lon: float
    name: str = ""


@dataclass(frozen=True)
class RoutePoint:
    stop_id: str
    order: int
    distance_from_start_km: float
    lat: float
    lon: float
    name: str = ""


@dataclass(frozen=True)
class Projection:
    nearest_segment_index: int  # bus is between stop i and stop i+1
    distance_along_route_km: float
    perpendicular_offset_km: float


@dataclass(frozen=True)
class RouteSnapshot:
    route_id: str
    version: int
    points: tuple[RoutePoint, ...]
    # Segment geometry on a local km plane, one LineString per stop pair
    segments: tuple[LineString, ...]
    # Haversine segment length divided by planar segment length
    segment_scale: tuple[float, ...]
    origin_cos: float

    @property
    def total_km(self) -> float:
        return self.points[-1].distance_from_start_km

    def stop_index(self, stop_id: str) -> int | None:
        for p in self.points:
            if p.stop_id == stop_id:
                return p.order
        return None

    def stop_index_at(self, distance_km: float) -> int:
        """Index of the last stop at or before the given route distance."""
        distances = [p.distance_from_start_km for p in self.points]
        return max(0, bisect_right(distances, distance_km) - 1)

    def to_plane(self, lat: float, lon: float) -> Point:
        return Point(lon * KM_PER_DEG * self.origin_cos, lat * KM_PER_DEG)

    def project(self, lat: float, lon: float, skip_ahead_ratio: float = 2.0) -> Projection:
        """Project a raw position onto the closest route segment.

        Segments are scanned in route order. A later segment only replaces
        the current best if its perpendicular offset is more than
        ``skip_ahead_ratio`` times smaller, so near-ties resolve to the
        earlier segment.
        """
        point = self.to_plane(lat, lon)
        offsets = [seg.distance(point) for seg in self.segments]

        best = 0
        for i in range(1, len(offsets)):
            if offsets[i] * skip_ahead_ratio < offsets[best]:
                best = i

        seg = self.segments[best]
        along_planar = seg.project(point)
        along_km = self.points[best].distance_from_start_km + along_planar * self.segment_scale[best]
        # Clamp to the segment's true extent to absorb float drift
        along_km = min(along_km, self.points[best + 1].distance_from_start_km)

        return Projection(
            nearest_segment_index=best,
            distance_along_route_km=along_km,
            perpendicular_offset_km=offsets[best],
        )


class RouteGeometryIndex:
    """Read-mostly registry of route snapshots."""

    def __init__(self) -> None:
        self._snapshots: dict[str, RouteSnapshot] = {}
        self._versions = itertools.count(1)

    def build(self, route_id: str, ordered_stops: list[RouteStop]) -> RouteSnapshot:
        """Build a snapshot from stops in traversal order and swap it in."""
        if len(ordered_stops) < 2:
            raise InvalidRoute(f"Route {route_id!r} needs at least 2 stops, got {len(ordered_stops)}")

        for s in ordered_stops:
            if not (-90.0 <= s.lat <= 90.0 and -180.0 <= s.lon <= 180.0):
                raise InvalidRoute(f"Route {route_id!r}: stop {s.stop_id!r} has invalid coordinates")

        origin_cos = math.cos(math.radians(sum(s.lat for s in ordered_stops) / len(ordered_stops)))

        points = []
        cum = 0.0
        for i, s in enumerate(ordered_stops):
            if i > 0:
                prev = ordered_stops[i - 1]
                cum += haversine_km(prev.lat, prev.lon, s.lat, s.lon)
            points.append(RoutePoint(
                stop_id=s.stop_id,
                order=i,
                distance_from_start_km=cum,
                lat=s.lat,
                lon=s.lon,
                name=s.name,
            ))

        segments = []
        scales = []
        for a, b in zip(points, points[1:]):
            line = LineString([
                (a.lon * KM_PER_DEG * origin_cos, a.lat * KM_PER_DEG),
                (b.lon * KM_PER_DEG * origin_cos, b.lat * KM_PER_DEG),
            ])
            segments.append(line)
            true_km = b.distance_from_start_km - a.distance_from_start_km
            scales.append(true_km / line.length if line.length > 0 else 0.0)

        snapshot = RouteSnapshot(
            route_id=route_id,
            version=next(self._versions),
            points=tuple(points),
            segments=tuple(segments),
            segment_scale=tuple(scales),
            origin_cos=origin_cos,
        )

        # Copy-on-write: concurrent readers keep the mapping they already hold
        snapshots = dict(self._snapshots)
        snapshots[route_id] = snapshot
        self._snapshots = snapshots

        logger.info(
            "Route %s: built v%d with %d stops, %.2f km",
            route_id, snapshot.version, len(points), snapshot.total_km,
        )
        return snapshot

    def get(self, route_id: str) -> RouteSnapshot | None:
        return self._snapshots.get(route_id)

    def project(
        self, route_id: str, lat: float, lon: float, skip_ahead_ratio: float = 2.0,
    ) -> Projection:
        snapshot = self._snapshots.get(route_id)
        if snapshot is None:
            raise NoRouteData(route_id)
        return snapshot.project(lat, lon, skip_ahead_ratio)

    def remove(self, route_id: str) -> None:
        if route_id not in self._snapshots:
            return
        snapshots = dict(self._snapshots)
        del snapshots[route_id]
        self._snapshots = snapshots

    def route_ids(self) -> list[str]:
        return list(self._snapshots)

    def routes_serving(self, stop_id: str) -> set[str]:
        return {
            route_id
            for route_id, snap in self._snapshots.items()
            if any(p.stop_id == stop_id for p in snap.points)
        }
