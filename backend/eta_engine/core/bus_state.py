"""Authoritative per-bus progress records.

Merging a fix into a record is a pure function (``advance``); the store only
serialises writers per bus and swaps immutable records in and out.
"""

import asyncio
import contextlib
import datetime
import enum
import logging
from dataclasses import dataclass, replace

from eta_engine.config import Settings, settings as default_settings
from eta_engine.core.errors import BusNotFound
from eta_engine.core.route_index import Projection
from eta_engine.core.telemetry import GPSFix

logger = logging.getLogger(__name__)


class BusStatus(str, enum.Enum):
    ACTIVE = "active"
    IDLE = "idle"
    OFFLINE = "offline"


# Staleness order used for monotonic transitions
STATUS_RANK = {BusStatus.ACTIVE: 0, BusStatus.IDLE: 1, BusStatus.OFFLINE: 2}


@dataclass(frozen=True)
class BusProgress:
    bus_id: str
    route_id: str
    last_fix: GPSFix
    recent_fixes: tuple[GPSFix, ...]
    projected_distance_km: float
    projected_stop_index: int
    smoothed_speed_kmh: float
    last_updated_at: datetime.datetime
    status: BusStatus
    perpendicular_offset_km: float | None = None
    stationary_since: datetime.datetime | None = None
    has_projection: bool = False


def smooth_speed(previous: float | None, raw: float, alpha: float) -> float:
    """Exponentially weighted moving average favoring the newest reading."""
    if previous is None:
        return raw
    return alpha * raw + (1 - alpha) * previous


def _jump_allowed(previous: BusProgress, fix: GPSFix, settings: Settings) -> bool:
    """A backward move is only believable after the bus was gone or parked a while."""
    if previous.status == BusStatus.OFFLINE:
        return True
    silent_s = (fix.received_at - previous.last_updated_at).total_seconds()
    if silent_s >= settings.jump_allowed_after_seconds:
        return True
    if previous.stationary_since is not None:
        parked_s = (fix.received_at - previous.stationary_since).total_seconds()
        return parked_s >= settings.jump_allowed_after_seconds
    return False


def advance(
    previous: BusProgress | None,
    route_id: str,
    fix: GPSFix,
    projection: Projection | None,
    settings: Settings = default_settings,
) -> BusProgress:
    """Merge an accepted fix into the previous record, returning a new one."""
    if previous is not None and previous.route_id != route_id:
        logger.info("Bus %s: route changed %s -> %s", fix.bus_id, previous.route_id, route_id)
        previous = None

    recent = (previous.recent_fixes if previous else ()) + (fix,)
    recent = recent[-settings.fix_window_size:]

    smoothed = smooth_speed(
        previous.smoothed_speed_kmh if previous else None,
        fix.speed_kmh,
        settings.speed_smoothing_alpha,
    )

    stationary = fix.speed_kmh <= settings.idle_speed_kmh
    status = BusStatus.IDLE if stationary else BusStatus.ACTIVE
    if not stationary:
        stationary_since = None
    elif previous is not None and previous.stationary_since is not None:
        stationary_since = previous.stationary_since
    else:
        stationary_since = fix.received_at

    distance = previous.projected_distance_km if previous else 0.0
    stop_index = previous.projected_stop_index if previous else 0
    offset = previous.perpendicular_offset_km if previous else None
    has_projection = previous.has_projection if previous else False

    if projection is not None:
        forward = (
            previous is None
            or not previous.has_projection
            or projection.distance_along_route_km >= previous.projected_distance_km
        )
        if forward or _jump_allowed(previous, fix, settings):
            if not forward:
                logger.info(
                    "Bus %s: accepted backward jump %.3f -> %.3f km",
                    fix.bus_id, previous.projected_distance_km, projection.distance_along_route_km,
                )
            distance = projection.distance_along_route_km
            stop_index = projection.nearest_segment_index
            offset = projection.perpendicular_offset_km
            has_projection = True
        else:
            logger.debug(
                "Bus %s: held position %.3f km against backward projection %.3f km",
                fix.bus_id, previous.projected_distance_km, projection.distance_along_route_km,
            )

    return BusProgress(
        bus_id=fix.bus_id,
        route_id=route_id,
        last_fix=fix,
        recent_fixes=recent,
        projected_distance_km=distance,
        projected_stop_index=stop_index,
        smoothed_speed_kmh=smoothed,
        last_updated_at=fix.received_at,
        status=status,
        perpendicular_offset_km=offset,
        stationary_since=stationary_since,
        has_projection=has_projection,
    )


class _BusLock:
    """A per-bus lock that knows how many callers hold or await it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class BusStateStore:
    """In-memory progress records, one writer at a time per bus."""

    def __init__(self, settings: Settings = default_settings) -> None:
        self._settings = settings
        self._progress: dict[str, BusProgress] = {}
        self._locks: dict[str, _BusLock] = {}

    @contextlib.asynccontextmanager
    async def _locked(self, bus_id: str):
        entry = self._locks.get(bus_id)
        if entry is None:
            entry = self._locks[bus_id] = _BusLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            # Only drop the lock once nobody can still be queued on it
            if entry.users == 0 and bus_id not in self._progress:
                self._locks.pop(bus_id, None)

    async def update(
        self, bus_id: str, route_id: str, fix: GPSFix, projection: Projection | None,
    ) -> BusProgress:
        async with self._locked(bus_id):
            progress = advance(self._progress.get(bus_id), route_id, fix, projection, self._settings)
            self._progress[bus_id] = progress
            return progress

    async def mark_offline(self, bus_id: str) -> BusProgress:
        return await self.transition(bus_id, BusStatus.OFFLINE)

    async def transition(
        self,
        bus_id: str,
        status: BusStatus,
        stale_before: datetime.datetime | None = None,
    ) -> BusProgress:
        """Set a bus's status, keeping its last known position.

        With ``stale_before``, the change is skipped if a fix has landed
        since the caller looked (last update at or after the cutoff).
        """
        async with self._locked(bus_id):
            progress = self._progress.get(bus_id)
            if progress is None:
                raise BusNotFound(bus_id)
            if stale_before is not None and progress.last_updated_at >= stale_before:
                return progress
            if progress.status == status:
                return progress
            progress = replace(progress, status=status)
            self._progress[bus_id] = progress
            return progress

    async def rebase(self, bus_id: str, projection: Projection) -> BusProgress | None:
        """Re-place a bus after its route geometry was rebuilt."""
        async with self._locked(bus_id):
            progress = self._progress.get(bus_id)
            if progress is None:
                return None
            progress = replace(
                progress,
                projected_distance_km=projection.distance_along_route_km,
                projected_stop_index=projection.nearest_segment_index,
                perpendicular_offset_km=projection.perpendicular_offset_km,
                has_projection=True,
            )
            self._progress[bus_id] = progress
            return progress

    def get(self, bus_id: str) -> BusProgress:
        progress = self._progress.get(bus_id)
        if progress is None:
            raise BusNotFound(bus_id)
        return progress

    def find(self, bus_id: str) -> BusProgress | None:
        return self._progress.get(bus_id)

    async def remove(
        self,
        bus_id: str,
        stale_before: datetime.datetime | None = None,
        status: BusStatus | None = None,
    ) -> BusProgress | None:
        """Drop a bus's record.

        ``stale_before`` and ``status`` make the removal conditional: it is
        skipped if a fix landed at or after the cutoff, or if the bus is no
        longer in ``status``.
        """
        async with self._locked(bus_id):
            progress = self._progress.get(bus_id)
            if progress is None:
                return None
            if stale_before is not None and progress.last_updated_at >= stale_before:
                return None
            if status is not None and progress.status != status:
                return None
            del self._progress[bus_id]
            return progress

    def all(self) -> list[BusProgress]:
        return list(self._progress.values())

    def on_route(self, route_id: str) -> list[BusProgress]:
        return [p for p in self._progress.values() if p.route_id == route_id]

    def __len__(self) -> int:
        return len(self._progress)
