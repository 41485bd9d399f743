from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from corridortrack.api.middleware import RateLimitConfig, SimpleRateLimitMiddleware
from corridortrack.api.routes_corridors import router as corridors_router
from corridortrack.api.routes_realtime import router as realtime_router
from corridortrack.api.routes_trips import router as trips_router
from corridortrack.logging_config import configure_logging
from corridortrack.realtime.fanout import FanoutHub
from corridortrack.settings import AppConfig, get_config
from corridortrack.storage.trips import trip_repository_from_config
from corridortrack.tracking.corridors import CorridorStore
from corridortrack.tracking.errors import MalformedInput, NotFound, RateLimited, TrackingError
from corridortrack.tracking.trips import TripManager

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: dict[type[TrackingError], int] = {
    NotFound: 404,
    MalformedInput: 400,
    RateLimited: 429,
}


async def _tracking_error_handler(request: Request, exc: TrackingError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("Unhandled tracking error on %s: %s", request.url.path, exc)
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after_seconds is not None:
        headers = {"Retry-After": str(int(exc.retry_after_seconds))}
    return JSONResponse(
        status_code=status,
        content={"success": False, "code": exc.code, "detail": str(exc)},
        headers=headers,
    )


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    configure_logging()
    config = config or get_config()

    corridors = CorridorStore.from_config(config)
    hub = FanoutHub()
    trips = TripManager.from_config(config, corridors, hub, trip_repository_from_config(config))
    trips.rehydrate()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.corridors.load_on_start:
            corridors.load_all()
        reaper = asyncio.create_task(trips.run_reaper(float(config.tracking.reaper_interval_seconds)))
        try:
            yield
        finally:
            reaper.cancel()
            await asyncio.gather(reaper, return_exceptions=True)

    app = FastAPI(title="Corridor Track API", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.corridors = corridors
    app.state.hub = hub
    app.state.trips = trips

    @app.get("/healthz")
    def healthz() -> dict[str, object]:
        return {
            "ok": True,
            "service": config.app.name,
            "corridors": len(corridors.keys()),
            "subscribers": hub.subscriber_count(),
        }

    # Snapshot polling is the fallback path for every client; keep it from being hammered.
    if config.api.rate_limit.enabled:
        app.add_middleware(
            SimpleRateLimitMiddleware,
            config=RateLimitConfig(
                enabled=True,
                window_seconds=float(config.api.rate_limit.window_seconds),
                max_requests=int(config.api.rate_limit.max_requests),
                include_paths=tuple(config.api.rate_limit.include_paths),
            ),
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors.allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(TrackingError, _tracking_error_handler)  # type: ignore[arg-type]

    app.include_router(trips_router, tags=["trips"])
    app.include_router(corridors_router, tags=["corridors"])
    app.include_router(realtime_router, tags=["realtime"])

    return app


app = create_app()
