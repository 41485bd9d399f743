from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from corridortrack.api.dependencies import get_corridor_store, get_trip_manager
from corridortrack.api.schemas import (
    CorridorDetail,
    CorridorSummary,
    EmptyReason,
    ItemsResponse,
    ReasonCode,
    TripView,
)
from corridortrack.tracking.corridors import CorridorStore, corridor_to_document
from corridortrack.tracking.errors import NotFound
from corridortrack.tracking.projector import Direction
from corridortrack.tracking.trips import TripManager


router = APIRouter()


@router.get("/corridors", response_model=list[CorridorSummary])
def list_corridors(store: CorridorStore = Depends(get_corridor_store)) -> list[CorridorSummary]:
    summaries = []
    for key in store.keys():
        corridor = store.get(key)
        summaries.append(
            CorridorSummary(
                key=corridor.key,
                name=corridor.name,
                length_meters=corridor.length_meters,
                point_count=len(corridor.geometry),
            )
        )
    return summaries


@router.get("/corridor/{key}", response_model=CorridorDetail)
def corridor_detail(key: str, store: CorridorStore = Depends(get_corridor_store)) -> CorridorDetail:
    doc = corridor_to_document(store.get(key))
    return CorridorDetail(
        key=doc["key"],
        name=doc["name"],
        length_meters=doc["lengthMeters"],
        encoded_polyline=doc["encodedPolyline"],
        simplified_line=doc["simplifiedLine"],
        endpoints=doc["endpoints"],
    )


@router.get("/corridor/{key}/active", response_model=ItemsResponse[TripView])
def active_trips(
    key: str,
    direction: Optional[Direction] = Query(default=None),
    store: CorridorStore = Depends(get_corridor_store),
    trips: TripManager = Depends(get_trip_manager),
) -> ItemsResponse[TripView]:
    try:
        store.get(key)
    except NotFound:
        return ItemsResponse(
            items=[],
            reason=EmptyReason(
                code=ReasonCode.UNKNOWN_CORRIDOR,
                message=f"Corridor '{key}' is not known to this server.",
                suggestion="Check the corridor key against GET /corridors.",
            ),
        )

    items = [TripView.model_validate(trip.to_view()) for trip in trips.list_active(key, direction)]
    if not items:
        return ItemsResponse(
            items=[],
            reason=EmptyReason(
                code=ReasonCode.NO_ACTIVE_TRIPS,
                message="No vehicle on this corridor has reported within the freshness window.",
            ),
        )
    return ItemsResponse(count=len(items), items=items)
