"""Route REST API endpoints."""

from fastapi import APIRouter, HTTPException

from eta_engine.core.errors import InvalidRoute
from eta_engine.core.route_index import RouteSnapshot, RouteStop
from eta_engine.schemas.route import RouteDetail, RoutePointOut, RouteStopIn

router = APIRouter(prefix="/api/routes", tags=["routes"])

# Will be set by main.py
tracker = None


def _detail(snapshot: RouteSnapshot) -> RouteDetail:
    return RouteDetail(
        route_id=snapshot.route_id,
        version=snapshot.version,
        total_km=round(snapshot.total_km, 3),
        points=[
            RoutePointOut(
                stop_id=p.stop_id,
                name=p.name,
                order=p.order,
                distance_from_start_km=round(p.distance_from_start_km, 3),
                lat=p.lat,
                lon=p.lon,
            )
            for p in snapshot.points
        ],
    )


@router.get("/{route_id}", response_model=RouteDetail)
async def get_route(route_id: str):
    """Get the indexed stop sequence of a route."""
    snapshot = tracker.get_route(route_id) if tracker else None
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Route not found")
    return _detail(snapshot)


@router.put("/{route_id}/stops", response_model=RouteDetail)
async def put_route_stops(route_id: str, stops: list[RouteStopIn]):
    """Replace a route's ordered stop list and rebuild its geometry."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized")
    try:
        snapshot = await tracker.register_route(
            route_id, [RouteStop(stop_id=s.stop_id, lat=s.lat, lon=s.lon, name=s.name) for s in stops],
        )
    except InvalidRoute as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _detail(snapshot)


@router.post("/{route_id}/reload", response_model=RouteDetail)
async def reload_route(route_id: str):
    """Re-fetch a route and its schedules from the directory."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized")
    snapshot = await tracker.load_route(route_id)
    if snapshot is None:
        raise HTTPException(status_code=502, detail="Route unavailable from directory")
    return _detail(snapshot)
