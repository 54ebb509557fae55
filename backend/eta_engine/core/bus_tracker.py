"""Main orchestrator: ingests fixes, keeps per-bus progress, publishes ETAs."""

import asyncio
import datetime
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass

from eta_engine.config import Settings, settings as default_settings
from eta_engine.core.broadcaster import Broadcaster, route_topic, stop_topic
from eta_engine.core.bus_state import BusProgress, BusStateStore, BusStatus
from eta_engine.core.errors import InvalidRoute, NoRouteData
from eta_engine.core.eta_calculator import (
    Eta,
    EtaCalculator,
    EtaMethod,
    ScheduledTimes,
    confidence_band,
)
from eta_engine.core.route_index import RouteGeometryIndex, RouteSnapshot, RouteStop, haversine_km
from eta_engine.core.staleness import StalenessMonitor
from eta_engine.core.segment_speeds import SegmentSpeedTable
from eta_engine.core.telemetry import GPSFix, IngestResult, RejectReason, TelemetryGateway
from eta_engine.schemas.bus import BusPosition
from eta_engine.schemas.eta import EtaOut

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def position_payload(progress: BusProgress) -> BusPosition:
    fix = progress.last_fix
    return BusPosition(
        bus_id=progress.bus_id,
        route_id=progress.route_id,
        lat=fix.lat,
        lon=fix.lon,
        speed_kmh=round(progress.smoothed_speed_kmh, 1),
        heading_deg=fix.heading_deg,
        accuracy_m=fix.accuracy_m,
        projected_distance_km=round(progress.projected_distance_km, 3) if progress.has_projection else None,
        projected_stop_index=progress.projected_stop_index if progress.has_projection else None,
        status=progress.status.value,
        last_updated_at=progress.last_updated_at,
    )


def eta_payload(eta: Eta) -> EtaOut:
    return EtaOut(
        bus_id=eta.bus_id,
        route_id=eta.route_id,
        stop_id=eta.stop_id,
        estimated_arrival_time=eta.estimated_arrival_time,
        eta_minutes=round(eta.eta_minutes, 1),
        distance_km=round(eta.distance_km, 3),
        confidence_score=eta.confidence_score,
        confidence=confidence_band(eta.confidence_score),
        method=eta.method.value,
        computed_at=eta.computed_at,
        arriving_now=eta.arriving_now,
        bus_status=eta.bus_status.value,
    )


def eta_changed(prior: Eta | None, eta: Eta, threshold_seconds: float) -> bool:
    """Whether ``eta`` differs enough from the last published one to resend."""
    if prior is None:
        return True
    if prior.method != eta.method or prior.arriving_now != eta.arriving_now:
        return True
    if confidence_band(prior.confidence_score) != confidence_band(eta.confidence_score):
        return True
    drift = (eta.estimated_arrival_time - prior.estimated_arrival_time).total_seconds()
    return abs(drift) > threshold_seconds


@dataclass(frozen=True)
class _Recompute:
    force: bool = False


class _BusWorker:
    """Processes one bus's work items strictly in the order they were queued."""

    def __init__(self, bus_id: str, handler) -> None:
        self.bus_id = bus_id
        self.queue: asyncio.Queue = asyncio.Queue()
        # Items queued or in progress
        self.pending = 0
        self._handler = handler
        self.task = asyncio.get_running_loop().create_task(self._run(), name=f"bus-worker-{bus_id}")

    async def _run(self) -> None:
        while True:
            item = await self.queue.get()
            try:
                await self._handler(self.bus_id, item)
            except Exception:
                logger.exception("Failed to process work item for bus %s", self.bus_id)
            finally:
                self.pending -= 1
                self.queue.task_done()

    def put(self, item) -> None:
        self.pending += 1
        self.queue.put_nowait(item)

    def cancel(self) -> None:
        self.task.cancel()
        # Items that will never run must not hold up drain()
        while not self.queue.empty():
            self.queue.get_nowait()
            self.pending -= 1
            self.queue.task_done()


class BusTracker:
    """Orchestrates the bus tracking pipeline.

    Fixes accepted by the gateway are queued on a per-bus worker, so
    different buses are processed concurrently while each bus's fixes are
    applied one at a time, in acceptance order. ETA recomputation is
    debounced per bus and runs on the same worker, which keeps broadcasts
    for a bus in commit order.
    """

    # Minimum gap between attempts to load an unknown route from the directory
    ROUTE_RETRY_SECONDS = 60

    def __init__(
        self,
        directory,
        broadcaster: Broadcaster,
        settings: Settings = default_settings,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self.directory = directory
        self.broadcaster = broadcaster
        self.settings = settings
        self._clock = clock

        self.route_index = RouteGeometryIndex()
        self.store = BusStateStore(settings)
        self.segment_speeds = SegmentSpeedTable(settings)
        self.eta_calculator = EtaCalculator(settings, clock, self.segment_speeds)
        self.gateway = TelemetryGateway(self._enqueue_fix, settings, clock)
        self.monitor = StalenessMonitor(
            self.store, self._on_status_change, self._on_evict, settings, clock,
            has_pending=self._has_pending,
        )

        # bus_id -> route_id the bus is currently assigned to
        self._assignments: dict[str, str] = {}
        # route_id -> {stop_id -> ScheduledTimes}
        self._schedules: dict[str, dict[str, ScheduledTimes]] = {}
        # route_id -> last directory load attempt for routes not yet indexed
        self._route_attempts: dict[str, datetime.datetime] = {}

        self._workers: dict[str, _BusWorker] = {}
        self._debounce_timers: dict[str, asyncio.TimerHandle] = {}
        # bus_id -> {stop_id -> last ETA broadcast for that stop}
        self._published_etas: dict[str, dict[str, Eta]] = {}

    # ------------------------------------------------------------------
    # Routes and assignments

    async def load_route(self, route_id: str) -> RouteSnapshot | None:
        """Fetch stops and schedules for a route from the directory and index them."""
        stops = await self.directory.get_route_stops(route_id)
        if len(stops) < 2:
            logger.warning("Route %s: directory returned %d stops, not indexing", route_id, len(stops))
            return None

        schedules: dict[str, ScheduledTimes] = {}
        for s in stops:
            times = await self.directory.get_scheduled_times(route_id, s.stop_id)
            if times is not None:
                schedules[s.stop_id] = times

        try:
            return await self.register_route(route_id, stops, schedules)
        except InvalidRoute:
            logger.exception("Route %s: directory data is not a valid route", route_id)
            return None

    async def register_route(
        self,
        route_id: str,
        stops: list[RouteStop],
        schedules: dict[str, ScheduledTimes] | None = None,
    ) -> RouteSnapshot:
        """Rebuild a route's geometry and re-place the buses running on it."""
        snapshot = self.route_index.build(route_id, stops)
        if schedules is not None:
            self._schedules[route_id] = schedules
        self._route_attempts.pop(route_id, None)

        for progress in self.store.on_route(route_id):
            fix = progress.last_fix
            projection = snapshot.project(fix.lat, fix.lon, self.settings.skip_ahead_ratio)
            await self.store.rebase(progress.bus_id, projection)
            self.eta_calculator.invalidate(progress.bus_id)
            self._enqueue_recompute(progress.bus_id)
        return snapshot

    async def refresh_routes(self) -> None:
        """Reload every indexed route from the directory."""
        for route_id in self.route_index.route_ids():
            try:
                await self.load_route(route_id)
            except Exception:
                logger.exception("Failed to refresh route %s", route_id)

    async def preload_routes(self, route_ids: list[str]) -> None:
        for route_id in route_ids:
            try:
                await self.load_route(route_id)
            except Exception:
                logger.exception("Failed to preload route %s", route_id)

    async def _ensure_route(self, route_id: str) -> RouteSnapshot | None:
        snapshot = self.route_index.get(route_id)
        if snapshot is not None:
            return snapshot

        now = self._clock()
        last = self._route_attempts.get(route_id)
        if last is not None and (now - last).total_seconds() < self.ROUTE_RETRY_SECONDS:
            return None
        self._route_attempts[route_id] = now
        try:
            return await self.load_route(route_id)
        except Exception:
            logger.exception("Failed to load route %s", route_id)
            return None

    def assign(self, bus_id: str, route_id: str) -> None:
        previous = self._assignments.get(bus_id)
        self._assignments[bus_id] = route_id
        if previous != route_id:
            logger.info("Bus %s assigned to route %s", bus_id, route_id)

    def route_for(self, bus_id: str) -> str | None:
        return self._assignments.get(bus_id)

    async def end_assignment(self, bus_id: str) -> bool:
        """End a bus's assignment and drop all of its live state."""
        route_id = self._assignments.pop(bus_id, None)
        progress = await self.store.remove(bus_id)
        self._discard_bus(bus_id)
        self.gateway.forget(bus_id)
        if progress is not None:
            await self._retire(progress, "ended")
        if route_id is not None or progress is not None:
            logger.info("Bus %s: assignment ended", bus_id)
            return True
        return False

    # ------------------------------------------------------------------
    # Fix pipeline

    def ingest(self, fix: GPSFix) -> IngestResult:
        if fix.route_id is None and fix.bus_id not in self._assignments:
            reason = RejectReason.NO_ASSIGNMENT
            self.gateway.rejections[reason.value] += 1
            logger.warning("Bus %s: fix rejected, bus has no route assignment", fix.bus_id)
            return IngestResult(accepted=False, reason=reason, detail="bus has no route assignment")
        return self.gateway.ingest(fix)

    def _has_pending(self, bus_id: str) -> bool:
        worker = self._workers.get(bus_id)
        return worker is not None and worker.pending > 0

    def _worker(self, bus_id: str) -> _BusWorker:
        worker = self._workers.get(bus_id)
        if worker is None:
            worker = _BusWorker(bus_id, self._handle)
            self._workers[bus_id] = worker
        return worker

    def _enqueue_fix(self, fix: GPSFix) -> None:
        self._worker(fix.bus_id).put(fix)

    def _enqueue_recompute(self, bus_id: str, force: bool = False) -> None:
        self._worker(bus_id).put(_Recompute(force=force))

    async def _handle(self, bus_id: str, item: GPSFix | _Recompute) -> None:
        if isinstance(item, GPSFix):
            await self._process_fix(item)
        else:
            await self._recompute_and_publish(bus_id, force=item.force)

    async def _process_fix(self, fix: GPSFix) -> None:
        route_id = fix.route_id or self._assignments.get(fix.bus_id)
        if route_id is None:
            logger.warning("Bus %s: fix dropped, assignment ended before it was applied", fix.bus_id)
            self.gateway.forget(fix.bus_id)
            return
        if fix.route_id is not None:
            self.assign(fix.bus_id, fix.route_id)

        snapshot = await self._ensure_route(route_id)
        projection = None
        if snapshot is not None:
            projection = snapshot.project(fix.lat, fix.lon, self.settings.skip_ahead_ratio)

        previous = self.store.find(fix.bus_id)
        progress = await self.store.update(fix.bus_id, route_id, fix, projection)
        if snapshot is not None:
            for arrival in self.segment_speeds.observe(previous, progress, snapshot):
                logger.debug(
                    "Bus %s: reached stop %s at %s", arrival.bus_id, arrival.stop_id, arrival.arrived_at.isoformat(),
                )

        if previous is None or previous.status != progress.status or previous.route_id != route_id:
            await self._publish_status(progress, previous.status if previous else None)

        if self.settings.debounce_seconds <= 0:
            await self._recompute_and_publish(fix.bus_id)
        else:
            self._schedule_recompute(fix.bus_id)

    def _schedule_recompute(self, bus_id: str) -> None:
        """Coalesce a burst of fixes into one recompute per debounce window."""
        if bus_id in self._debounce_timers:
            return
        loop = asyncio.get_running_loop()
        self._debounce_timers[bus_id] = loop.call_later(
            self.settings.debounce_seconds, self._fire_recompute, bus_id,
        )

    def _fire_recompute(self, bus_id: str) -> None:
        self._debounce_timers.pop(bus_id, None)
        if bus_id in self._workers:
            self._enqueue_recompute(bus_id)

    async def _recompute_and_publish(self, bus_id: str, force: bool = False) -> None:
        """Publish the bus's position and any materially changed stop ETAs."""
        progress = self.store.find(bus_id)
        if progress is None:
            return

        await self.broadcaster.publish(
            route_topic(progress.route_id), "position", position_payload(progress).model_dump(),
        )

        try:
            etas = self._estimate(progress)
        except NoRouteData:
            logger.debug("Bus %s: no route geometry for route %s", bus_id, progress.route_id)
            etas = []

        previous = self._published_etas.get(bus_id, {})
        current: dict[str, Eta] = {}
        for eta in etas:
            prior = previous.get(eta.stop_id)
            if force or eta_changed(prior, eta, self.settings.eta_change_threshold_seconds):
                await self.broadcaster.publish(
                    stop_topic(eta.stop_id), "eta", eta_payload(eta).model_dump(),
                )
                current[eta.stop_id] = eta
            else:
                # Keep the last broadcast as the baseline so slow drift still triggers
                current[eta.stop_id] = prior

        for stop_id in previous.keys() - current.keys():
            await self.broadcaster.publish(stop_topic(stop_id), "passed", {
                "bus_id": bus_id,
                "route_id": previous[stop_id].route_id,
                "stop_id": stop_id,
            })

        self._published_etas[bus_id] = current

    def _estimate(self, progress: BusProgress, method: EtaMethod | None = None) -> list[Eta]:
        return self.eta_calculator.estimate(
            progress,
            self.route_index.get(progress.route_id),
            self._schedules.get(progress.route_id),
            method,
        )

    async def _publish_status(self, progress: BusProgress, previous_status: BusStatus | None) -> None:
        await self.broadcaster.publish(route_topic(progress.route_id), "status", {
            "bus_id": progress.bus_id,
            "route_id": progress.route_id,
            "status": progress.status.value,
            "previous_status": previous_status.value if previous_status else None,
            "last_updated_at": progress.last_updated_at,
        })

    async def _retire(self, progress: BusProgress, status: str) -> None:
        """Tell route and stop subscribers that a bus is no longer tracked."""
        payload = {"bus_id": progress.bus_id, "route_id": progress.route_id, "status": status}
        await self.broadcaster.publish(route_topic(progress.route_id), "status", payload)
        for stop_id in self._published_etas.pop(progress.bus_id, {}):
            await self.broadcaster.publish(stop_topic(stop_id), "status", {**payload, "stop_id": stop_id})

    def _discard_bus(self, bus_id: str) -> None:
        handle = self._debounce_timers.pop(bus_id, None)
        if handle is not None:
            handle.cancel()
        worker = self._workers.pop(bus_id, None)
        if worker is not None and worker.task is not asyncio.current_task():
            worker.cancel()
        self.eta_calculator.invalidate(bus_id)
        self.segment_speeds.forget(bus_id)

    # ------------------------------------------------------------------
    # Staleness callbacks

    async def _on_status_change(self, progress: BusProgress, previous_status: BusStatus) -> None:
        self.eta_calculator.invalidate(progress.bus_id)
        await self._publish_status(progress, previous_status)
        self._enqueue_recompute(progress.bus_id, force=True)

    async def _on_evict(self, progress: BusProgress) -> None:
        logger.info("Bus %s: evicted after prolonged offline period", progress.bus_id)
        self._discard_bus(progress.bus_id)
        self.gateway.forget(progress.bus_id)
        await self._retire(progress, "removed")

    async def check_staleness(self) -> None:
        """Scheduler entry point for the staleness sweep."""
        try:
            await self.monitor.sweep()
        except Exception:
            logger.exception("Error in staleness sweep")

    # ------------------------------------------------------------------
    # Queries

    def get_bus(self, bus_id: str) -> BusProgress:
        return self.store.get(bus_id)

    def get_bus_etas(self, bus_id: str) -> list[Eta]:
        progress = self.store.get(bus_id)
        try:
            return self._estimate(progress)
        except NoRouteData:
            return []

    def get_positions(self, route_filter: str | None = None) -> list[BusProgress]:
        if route_filter:
            return self.store.on_route(route_filter)
        return self.store.all()

    def get_etas_for_stop(self, stop_id: str, route_filter: str | None = None) -> list[Eta]:
        """Current ETAs of every tracked bus that still has ``stop_id`` ahead.

        A bus whose estimation fails is left out; the rest are still returned.
        """
        routes = self.route_index.routes_serving(stop_id)
        if route_filter:
            routes &= {route_filter}

        arrivals = []
        for route_id in routes:
            for progress in self.store.on_route(route_id):
                try:
                    etas = self._estimate(progress)
                except NoRouteData:
                    continue
                except Exception:
                    logger.exception("ETA estimation failed for bus %s", progress.bus_id)
                    continue
                for eta in etas:
                    if eta.stop_id == stop_id:
                        arrivals.append(eta)
                        break

        arrivals.sort(key=lambda e: e.eta_minutes)
        return arrivals

    def get_buses_near(
        self, lat: float, lon: float, radius_km: float | None = None,
    ) -> list[tuple[BusProgress, float]]:
        """Tracked buses whose last fix lies within ``radius_km`` of a point, nearest first.

        Buses whose last fix is older than ``nearby_max_age_seconds`` are left out.
        """
        radius = self.settings.nearby_radius_km if radius_km is None else radius_km
        now = self._clock()
        nearby = []
        for progress in self.store.all():
            age = (now - progress.last_updated_at).total_seconds()
            if age > self.settings.nearby_max_age_seconds:
                continue
            fix = progress.last_fix
            distance = haversine_km(lat, lon, fix.lat, fix.lon)
            if distance <= radius:
                nearby.append((progress, distance))
        nearby.sort(key=lambda pair: pair[1])
        return nearby

    def get_route(self, route_id: str) -> RouteSnapshot | None:
        return self.route_index.get(route_id)

    def route_diagnostics(self, route_id: str) -> dict | None:
        snap = self.route_index.get(route_id)
        if snap is None:
            return None
        return {
            "route_id": route_id,
            "version": snap.version,
            "stops": len(snap.points),
            "total_km": round(snap.total_km, 3),
            "buses": len(self.store.on_route(route_id)),
            "scheduled_stops": len(self._schedules.get(route_id, {})),
        }

    def get_diagnostics(self) -> dict:
        routes = []
        for route_id in sorted(self.route_index.route_ids()):
            diag = self.route_diagnostics(route_id)
            if diag is not None:
                routes.append(diag)

        return {
            "buses": len(self.store),
            "by_status": dict(Counter(p.status.value for p in self.store.all())),
            "assignments": len(self._assignments),
            "workers": len(self._workers),
            "pending_recomputes": len(self._debounce_timers),
            "staleness_sweeps": self.monitor.sweeps,
            "telemetry": {
                "accepted": self.gateway.accepted_count,
                "rejected": dict(self.gateway.rejections),
            },
            "routes": routes,
            "segment_speeds": self.segment_speeds.stats(),
            "broadcast": self.broadcaster.stats(),
        }

    # ------------------------------------------------------------------
    # Lifecycle

    async def drain(self) -> None:
        """Wait until every queued fix and recompute has been processed."""
        while True:
            workers = [w for w in self._workers.values() if w.pending]
            if not workers:
                return
            await asyncio.gather(*(w.queue.join() for w in workers))

    async def flush(self) -> None:
        """Run pending debounced recomputes now and wait for them."""
        for bus_id, handle in list(self._debounce_timers.items()):
            handle.cancel()
            self._debounce_timers.pop(bus_id, None)
            if bus_id in self._workers:
                self._enqueue_recompute(bus_id)
        await self.drain()

    async def close(self) -> None:
        for handle in self._debounce_timers.values():
            handle.cancel()
        self._debounce_timers.clear()
        workers = list(self._workers.values())
        self._workers.clear()
        for w in workers:
            w.cancel()
        await asyncio.gather(*(w.task for w in workers), return_exceptions=True)
