"""Periodic sweep that downgrades buses whose fixes stopped arriving."""

import datetime
import logging
from collections.abc import Awaitable, Callable

from eta_engine.config import Settings, settings as default_settings
from eta_engine.core.bus_state import STATUS_RANK, BusProgress, BusStateStore, BusStatus
from eta_engine.core.errors import BusNotFound

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def classify(progress: BusProgress, now: datetime.datetime, settings: Settings) -> BusStatus:
    """Status implied by staleness alone; never less stale than the current one."""
    staleness = (now - progress.last_updated_at).total_seconds()
    if staleness > settings.offline_after_seconds:
        target = BusStatus.OFFLINE
    elif staleness > settings.idle_after_seconds:
        target = BusStatus.IDLE
    else:
        return progress.status
    if STATUS_RANK[target] > STATUS_RANK[progress.status]:
        return target
    return progress.status


class StalenessMonitor:
    """Marks silent buses idle/offline and evicts long-offline ones."""

    def __init__(
        self,
        store: BusStateStore,
        on_transition: Callable[[BusProgress, BusStatus], Awaitable[None]],
        on_evict: Callable[[BusProgress], Awaitable[None]],
        settings: Settings = default_settings,
        clock: Callable[[], datetime.datetime] = _utcnow,
        has_pending: Callable[[str], bool] = lambda bus_id: False,
    ) -> None:
        self._store = store
        self._on_transition = on_transition
        self._on_evict = on_evict
        self._settings = settings
        self._clock = clock
        # True while an accepted fix for the bus is still waiting to be applied
        self._has_pending = has_pending
        self.sweeps = 0

    async def sweep(self) -> list[BusProgress]:
        """One tick: O(tracked buses). Returns the records that changed status."""
        now = self._clock()
        changed = []
        evicted = 0

        for progress in self._store.all():
            staleness = (now - progress.last_updated_at).total_seconds()
            try:
                if (
                    progress.status == BusStatus.OFFLINE
                    and staleness > self._settings.offline_retention_seconds
                ):
                    if self._has_pending(progress.bus_id):
                        continue
                    removed = await self._store.remove(
                        progress.bus_id,
                        stale_before=progress.last_updated_at + datetime.timedelta(microseconds=1),
                        status=BusStatus.OFFLINE,
                    )
                    if removed is not None:
                        evicted += 1
                        await self._on_evict(removed)
                    continue

                target = classify(progress, now, self._settings)
                if target == progress.status:
                    continue

                cutoff = progress.last_updated_at + datetime.timedelta(microseconds=1)
                updated = await self._store.transition(progress.bus_id, target, stale_before=cutoff)
                if updated.last_updated_at != progress.last_updated_at or updated.status != target:
                    continue  # a fresh fix arrived meanwhile

                logger.info(
                    "Bus %s: %s -> %s after %.0fs without a fix",
                    progress.bus_id, progress.status.value, target.value, staleness,
                )
                changed.append(updated)
                await self._on_transition(updated, progress.status)
            except BusNotFound:
                continue
            except Exception:
                logger.exception("Staleness check failed for bus %s", progress.bus_id)

        self.sweeps += 1
        if changed or evicted:
            logger.debug("Staleness sweep: %d transitions, %d evicted", len(changed), evicted)
        return changed
