import datetime

from pydantic import BaseModel


class FixIn(BaseModel):
    bus_id: str
    lat: float
    lon: float
    speed_kmh: float = 0.0
    heading_deg: float = 0.0
    accuracy_m: float | None = None
    timestamp: datetime.datetime
    route_id: str | None = None


class FixResult(BaseModel):
    accepted: bool
    reason: str | None = None
    detail: str = ""
