from pydantic import BaseModel


class RouteStopIn(BaseModel):
    stop_id: str
    name: str = ""
    lat: float
    lon: float


class RoutePointOut(BaseModel):
    stop_id: str
    name: str
    order: int
    distance_from_start_km: float
    lat: float
    lon: float


class RouteDetail(BaseModel):
    route_id: str
    version: int
    total_km: float
    points: list[RoutePointOut]
