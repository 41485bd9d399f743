from __future__ import annotations

from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from corridortrack.tracking.projector import Direction

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReasonCode(str, Enum):
    UNKNOWN_CORRIDOR = "unknown_corridor"
    NO_ACTIVE_TRIPS = "no_active_trips"


class EmptyReason(BaseModel):
    code: ReasonCode
    message: str
    suggestion: str | None = None


class ItemsResponse(CamelModel, Generic[T]):
    count: int = 0
    items: list[T] = Field(default_factory=list)
    reason: EmptyReason | None = None


class SuccessResponse(BaseModel):
    success: bool = True


class StartTripRequest(CamelModel):
    corridor_key: str
    direction: Direction = Direction.FORWARD
    # Optional initial fix; otherwise the vehicle's last known location is used.
    lon: Optional[float] = Field(default=None, validation_alias=AliasChoices("lon", "lng"))
    lat: Optional[float] = None
    speed: Optional[float] = None


class LocationUpdateRequest(BaseModel):
    lon: Optional[float] = Field(default=None, validation_alias=AliasChoices("lon", "lng"))
    lat: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None


class GeoPoint(BaseModel):
    type: str = "Point"
    coordinates: list[float]


class ProgressView(BaseModel):
    meters: float
    percent: float


class TripView(CamelModel):
    trip_id: str
    vehicle_ref: str
    corridor_key: str
    direction: Direction
    status: str
    last_location: Optional[GeoPoint] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    progress: Optional[ProgressView] = None
    eta: Optional[str] = None
    eta_seconds: Optional[int] = None
    started_at: str
    updated_at: str
    ended_at: Optional[str] = None


class StartTripResponse(CamelModel):
    success: bool = True
    trip_id: str
    trip: TripView


class CorridorSummary(CamelModel):
    key: str
    name: str
    length_meters: float
    point_count: int


class CorridorDetail(CamelModel):
    key: str
    name: str
    length_meters: float
    encoded_polyline: str
    simplified_line: dict[str, Any]
    endpoints: dict[str, Any]
