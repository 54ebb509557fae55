import datetime

from pydantic import BaseModel


class BusPosition(BaseModel):
    bus_id: str
    route_id: str
    lat: float
    lon: float
    speed_kmh: float
    heading_deg: float
    accuracy_m: float | None = None
    projected_distance_km: float | None = None
    projected_stop_index: int | None = None
    status: str
    last_updated_at: datetime.datetime


class AssignmentIn(BaseModel):
    route_id: str


class Assignment(BaseModel):
    bus_id: str
    route_id: str | None = None


class BusNearby(BusPosition):
    distance_km: float
