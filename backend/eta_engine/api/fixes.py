"""GPS fix ingestion endpoint for driver devices."""

import datetime

from fastapi import APIRouter, HTTPException, Response

from eta_engine.core.telemetry import GPSFix, RejectReason
from eta_engine.schemas.fix import FixIn, FixResult

router = APIRouter(prefix="/api/fixes", tags=["fixes"])

# Will be set by main.py
tracker = None


@router.post("", response_model=FixResult, status_code=202)
async def post_fix(fix: FixIn, response: Response):
    """Submit one GPS fix. Duplicates are acknowledged but not applied."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized")

    timestamp = fix.timestamp
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=datetime.timezone.utc)

    result = tracker.ingest(GPSFix(
        bus_id=fix.bus_id,
        lat=fix.lat,
        lon=fix.lon,
        speed_kmh=fix.speed_kmh,
        heading_deg=fix.heading_deg,
        accuracy_m=fix.accuracy_m,
        client_timestamp=timestamp,
        route_id=fix.route_id,
    ))

    if result.accepted:
        return FixResult(accepted=True)
    if result.reason == RejectReason.DUPLICATE_TIMESTAMP:
        response.status_code = 200
        return FixResult(accepted=False, reason=result.reason.value, detail=result.detail)
    if result.reason == RejectReason.NO_ASSIGNMENT:
        raise HTTPException(
            status_code=409,
            detail={"reason": result.reason.value, "detail": result.detail},
        )
    raise HTTPException(
        status_code=422,
        detail={"reason": result.reason.value, "detail": result.detail},
    )
