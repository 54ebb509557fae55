"""Diagnostics API for the tracking pipeline."""

from fastapi import APIRouter, HTTPException

router = APIRouter(prefix="/api/diagnostics", tags=["diagnostics"])

# Will be set by main.py
tracker = None


@router.get("")
async def get_diagnostics():
    """Get pipeline counters: buses by status, telemetry rejections, routes, subscribers."""
    if tracker is None:
        return {"error": "Tracker not initialized"}
    return tracker.get_diagnostics()


@router.get("/routes/{route_id}")
async def get_route_diagnostics(route_id: str):
    """Get diagnostics for a specific route."""
    if tracker is None:
        return {"error": "Tracker not initialized"}
    diag = tracker.route_diagnostics(route_id)
    if diag is None:
        raise HTTPException(status_code=404, detail="Route not found")
    return diag
