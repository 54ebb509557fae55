"""Stop REST API endpoints."""

from fastapi import APIRouter

from eta_engine.core.bus_tracker import eta_payload
from eta_engine.schemas.eta import StopEtas

router = APIRouter(prefix="/api/stops", tags=["stops"])

# Will be set by main.py
tracker = None


@router.get("/{stop_id}/etas", response_model=StopEtas)
async def get_stop_etas(stop_id: str, route: str | None = None):
    """Get upcoming bus arrivals at a stop, soonest first."""
    if tracker is None:
        return StopEtas(stop_id=stop_id, etas=[])
    etas = tracker.get_etas_for_stop(stop_id, route_filter=route)
    return StopEtas(stop_id=stop_id, etas=[eta_payload(e) for e in etas])
