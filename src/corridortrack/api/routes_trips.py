from __future__ import annotations

from fastapi import APIRouter, Depends

from corridortrack.api.dependencies import get_trip_manager, require_vehicle
from corridortrack.api.schemas import (
    LocationUpdateRequest,
    StartTripRequest,
    StartTripResponse,
    SuccessResponse,
    TripView,
)
from corridortrack.tracking.trips import TripManager


router = APIRouter()


@router.post("/trips/start", status_code=201, response_model=StartTripResponse)
async def start_trip(
    body: StartTripRequest,
    vehicle_ref: str = Depends(require_vehicle),
    trips: TripManager = Depends(get_trip_manager),
) -> StartTripResponse:
    location = None
    if body.lon is not None or body.lat is not None:
        location = (body.lon, body.lat)
    trip = await trips.start(
        vehicle_ref,
        body.corridor_key,
        body.direction,
        location=location,
        speed=body.speed,
    )
    return StartTripResponse(trip_id=trip.id, trip=TripView.model_validate(trip.to_view()))


@router.post("/trips/{trip_id}/location", response_model=SuccessResponse)
async def update_location(
    trip_id: str,
    body: LocationUpdateRequest,
    vehicle_ref: str = Depends(require_vehicle),
    trips: TripManager = Depends(get_trip_manager),
) -> SuccessResponse:
    await trips.update_location(
        trip_id,
        (body.lon, body.lat),
        speed=body.speed,
        heading=body.heading,
        vehicle_ref=vehicle_ref,
    )
    return SuccessResponse()


@router.post("/trips/{trip_id}/end", response_model=SuccessResponse)
async def end_trip(
    trip_id: str,
    vehicle_ref: str = Depends(require_vehicle),
    trips: TripManager = Depends(get_trip_manager),
) -> SuccessResponse:
    await trips.end(trip_id, vehicle_ref=vehicle_ref)
    return SuccessResponse()


@router.get("/trips/{trip_id}", response_model=TripView)
def get_trip(trip_id: str, trips: TripManager = Depends(get_trip_manager)) -> TripView:
    return TripView.model_validate(trips.get(trip_id).to_view())
