import datetime

from pydantic import BaseModel


class EtaOut(BaseModel):
    bus_id: str
    route_id: str
    stop_id: str
    estimated_arrival_time: datetime.datetime
    eta_minutes: float
    distance_km: float
    confidence_score: float
    confidence: str
    method: str
    computed_at: datetime.datetime
    arriving_now: bool = False
    bus_status: str


class StopEtas(BaseModel):
    stop_id: str
    etas: list[EtaOut]


class BusEtas(BaseModel):
    bus_id: str
    route_id: str
    status: str
    etas: list[EtaOut]
