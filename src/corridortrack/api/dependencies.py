from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request

from corridortrack.realtime.fanout import FanoutHub
from corridortrack.settings import AppConfig
from corridortrack.tracking.corridors import CorridorStore
from corridortrack.tracking.trips import TripManager


def get_app_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_corridor_store(request: Request) -> CorridorStore:
    return request.app.state.corridors


def get_trip_manager(request: Request) -> TripManager:
    return request.app.state.trips


def get_hub(request: Request) -> FanoutHub:
    return request.app.state.hub


def require_vehicle(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_vehicle_ref: Optional[str] = Header(default=None),
) -> str:
    """Resolve the reporting vehicle's identity.

    Authentication proper lives outside this service. With `auth.vehicle_tokens` configured a
    bearer token maps to a vehicle; otherwise an upstream gateway is trusted to set `X-Vehicle-Ref`.
    """

    tokens = request.app.state.config.auth.vehicle_tokens
    if tokens:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise HTTPException(status_code=401, detail="Missing token")
        vehicle_ref = tokens.get(authorization.split(" ", 1)[1].strip())
        if not vehicle_ref:
            raise HTTPException(status_code=401, detail="Invalid token")
        return vehicle_ref

    if not x_vehicle_ref or not x_vehicle_ref.strip():
        raise HTTPException(status_code=401, detail="Missing vehicle identity (X-Vehicle-Ref)")
    return x_vehicle_ref.strip()
