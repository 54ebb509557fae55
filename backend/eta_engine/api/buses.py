"""Bus REST API endpoints."""

from fastapi import APIRouter, HTTPException, Query

from eta_engine.core.bus_tracker import eta_payload, position_payload
from eta_engine.core.errors import BusNotFound
from eta_engine.schemas.bus import Assignment, AssignmentIn, BusNearby, BusPosition
from eta_engine.schemas.eta import BusEtas

router = APIRouter(prefix="/api/buses", tags=["buses"])

# Will be set by main.py
tracker = None


@router.get("", response_model=list[BusPosition])
async def list_buses(route: str | None = None):
    """Get all tracked buses, optionally on one route."""
    if tracker is None:
        return []
    return [position_payload(p) for p in tracker.get_positions(route)]


@router.get("/near", response_model=list[BusNearby])
async def buses_near(
    lat: float = Query(ge=-90, le=90),
    lon: float = Query(ge=-180, le=180),
    radius_km: float | None = Query(default=None, gt=0),
):
    """Buses with a recent fix within `radius_km` of a point, nearest first."""
    if tracker is None:
        return []
    return [
        BusNearby(**position_payload(p).model_dump(), distance_km=round(distance, 3))
        for p, distance in tracker.get_buses_near(lat, lon, radius_km)
    ]


@router.get("/{bus_id}", response_model=BusPosition)
async def get_bus(bus_id: str):
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized")
    try:
        return position_payload(tracker.get_bus(bus_id))
    except BusNotFound:
        raise HTTPException(status_code=404, detail="Bus not found")


@router.get("/{bus_id}/etas", response_model=BusEtas)
async def get_bus_etas(bus_id: str):
    """ETAs for every stop still ahead of the bus."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized")
    try:
        progress = tracker.get_bus(bus_id)
        etas = tracker.get_bus_etas(bus_id)
    except BusNotFound:
        raise HTTPException(status_code=404, detail="Bus not found")
    return BusEtas(
        bus_id=bus_id,
        route_id=progress.route_id,
        status=progress.status.value,
        etas=[eta_payload(e) for e in etas],
    )


@router.put("/{bus_id}/assignment", response_model=Assignment)
async def assign_bus(bus_id: str, body: AssignmentIn):
    """Start (or change) the route a bus is driving."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized")
    tracker.assign(bus_id, body.route_id)
    return Assignment(bus_id=bus_id, route_id=body.route_id)


@router.delete("/{bus_id}/assignment", response_model=Assignment)
async def end_assignment(bus_id: str):
    """End a bus's assignment; its position and ETAs are withdrawn."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized")
    if not await tracker.end_assignment(bus_id):
        raise HTTPException(status_code=404, detail="Bus not found")
    return Assignment(bus_id=bus_id)
