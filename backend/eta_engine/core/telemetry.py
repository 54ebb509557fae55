"""Telemetry gateway: validate driver GPS fixes and hand them to the pipeline."""

import datetime
import enum
import logging
import math
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, replace

from eta_engine.config import Settings, settings as default_settings
from eta_engine.core.errors import StaleInputError, ValidationError
from eta_engine.core.route_index import haversine_km

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class GPSFix:
    bus_id: str
    lat: float
    lon: float
    speed_kmh: float
    heading_deg: float
    accuracy_m: float | None
    client_timestamp: datetime.datetime
    received_at: datetime.datetime | None = None
    route_id: str | None = None


class RejectReason(str, enum.Enum):
    OUT_OF_RANGE = "OutOfRange"
    IMPLAUSIBLE_SPEED = "ImplausibleSpeed"
    DUPLICATE_TIMESTAMP = "DuplicateTimestamp"
    NO_ASSIGNMENT = "NoAssignment"


@dataclass(frozen=True)
class IngestResult:
    accepted: bool
    reason: RejectReason | None = None
    detail: str = ""


ACCEPTED = IngestResult(accepted=True)


def validate_fix(fix: GPSFix, last_accepted: GPSFix | None, max_speed_kmh: float) -> None:
    """Raise if ``fix`` must not be applied after ``last_accepted``."""
    if not (math.isfinite(fix.lat) and math.isfinite(fix.lon)):
        raise ValidationError(RejectReason.OUT_OF_RANGE, "non-finite coordinates")
    if not -90.0 <= fix.lat <= 90.0:
        raise ValidationError(RejectReason.OUT_OF_RANGE, f"latitude {fix.lat} outside [-90, 90]")
    if not -180.0 <= fix.lon <= 180.0:
        raise ValidationError(RejectReason.OUT_OF_RANGE, f"longitude {fix.lon} outside [-180, 180]")
    if not math.isfinite(fix.speed_kmh) or fix.speed_kmh < 0:
        raise ValidationError(RejectReason.OUT_OF_RANGE, f"speed {fix.speed_kmh} is not a valid speed")
    if fix.accuracy_m is not None and (not math.isfinite(fix.accuracy_m) or fix.accuracy_m < 0):
        raise ValidationError(RejectReason.OUT_OF_RANGE, f"accuracy {fix.accuracy_m} is not valid")

    if last_accepted is not None and fix.client_timestamp <= last_accepted.client_timestamp:
        raise StaleInputError(
            RejectReason.DUPLICATE_TIMESTAMP,
            f"timestamp {fix.client_timestamp.isoformat()} not after "
            f"{last_accepted.client_timestamp.isoformat()}",
        )

    if fix.speed_kmh > max_speed_kmh:
        raise ValidationError(
            RejectReason.IMPLAUSIBLE_SPEED,
            f"reported speed {fix.speed_kmh:.0f} km/h exceeds {max_speed_kmh:.0f} km/h",
        )

    if last_accepted is not None:
        elapsed_s = (fix.client_timestamp - last_accepted.client_timestamp).total_seconds()
        moved_km = haversine_km(last_accepted.lat, last_accepted.lon, fix.lat, fix.lon)
        implied_kmh = moved_km / elapsed_s * 3600
        if implied_kmh > max_speed_kmh:
            raise ValidationError(
                RejectReason.IMPLAUSIBLE_SPEED,
                f"moved {moved_km:.2f} km in {elapsed_s:.0f}s "
                f"(implied {implied_kmh:.0f} km/h > {max_speed_kmh:.0f} km/h)",
            )


class TelemetryGateway:
    """Accepts one fix at a time and forwards accepted fixes in order."""

    def __init__(
        self,
        on_accept: Callable[[GPSFix], None],
        settings: Settings = default_settings,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self._on_accept = on_accept
        self._settings = settings
        self._clock = clock
        # bus_id -> last accepted fix (the dedup/plausibility reference)
        self._last_accepted: dict[str, GPSFix] = {}
        self.accepted_count = 0
        self.rejections: Counter[str] = Counter()

    def ingest(self, fix: GPSFix) -> IngestResult:
        """Validate a fix; on acceptance record it and forward it.

        Runs without suspension points, so the check-and-record step is
        atomic with respect to other fixes for the same bus.
        """
        if fix.received_at is None:
            fix = replace(fix, received_at=self._clock())

        try:
            validate_fix(fix, self._last_accepted.get(fix.bus_id), self._settings.max_plausible_speed_kmh)
        except StaleInputError as e:
            self.rejections[e.reason.value] += 1
            logger.debug("Bus %s: dropped fix: %s", fix.bus_id, e.detail)
            return IngestResult(accepted=False, reason=e.reason, detail=e.detail)
        except ValidationError as e:
            self.rejections[e.reason.value] += 1
            logger.info("Bus %s: rejected fix (%s): %s", fix.bus_id, e.reason.value, e.detail)
            return IngestResult(accepted=False, reason=e.reason, detail=e.detail)

        self._last_accepted[fix.bus_id] = fix
        self.accepted_count += 1
        self._on_accept(fix)
        return ACCEPTED

    def last_accepted(self, bus_id: str) -> GPSFix | None:
        return self._last_accepted.get(bus_id)

    def forget(self, bus_id: str) -> None:
        self._last_accepted.pop(bus_id, None)
