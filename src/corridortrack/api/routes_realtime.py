"""Realtime transports over the fan-out hub: a WebSocket command channel and SSE streams."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from corridortrack.realtime.fanout import (
    Event,
    FanoutHub,
    QueueSubscriber,
    corridor_topic,
    trip_topic,
    vehicle_topic,
)
from corridortrack.tracking.projector import Direction

logger = logging.getLogger(__name__)

router = APIRouter()

_TOPIC_BUILDERS = {
    "track-corridor": corridor_topic,
    "track-trip": trip_topic,
    "track-vehicle": vehicle_topic,
}


def format_sse(event: Event) -> bytes:
    payload = json.dumps(event, ensure_ascii=False)
    event_type = event.get("type")
    if event_type:
        return f"event: {event_type}\ndata: {payload}\n\n".encode("utf-8")
    return f"data: {payload}\n\n".encode("utf-8")


def handle_command(hub: FanoutHub, subscriber: QueueSubscriber, message: Any) -> Event:
    """Apply one subscription command and return the acknowledgement to send back."""

    if not isinstance(message, dict):
        return {"type": "error", "detail": "Expected a JSON object."}
    action = message.get("action")
    target = message.get("id") or message.get("key") or message.get("tripId") or message.get("vehicleRef")

    if action in _TOPIC_BUILDERS:
        if not target:
            return {"type": "error", "detail": f"'{action}' needs an id."}
        topic = _TOPIC_BUILDERS[action](str(target))
        hub.subscribe(subscriber, topic)
        return {"type": "subscribed", "topic": topic}

    if action == "stop-tracking":
        if target:
            topics = [build(str(target)) for build in _TOPIC_BUILDERS.values()]
        else:
            topics = sorted(hub.topics_of(subscriber))
        left = [topic for topic in topics if topic in hub.topics_of(subscriber)]
        for topic in left:
            hub.unsubscribe(subscriber, topic)
        return {"type": "unsubscribed", "topics": left}

    return {"type": "error", "detail": f"Unknown action: {action!r}"}


async def _pump(websocket: WebSocket, subscriber: QueueSubscriber) -> None:
    while True:
        event = await subscriber.get()
        if event is not None:
            await websocket.send_json(event)


@router.websocket("/ws")
async def tracking_socket(websocket: WebSocket) -> None:
    await websocket.accept()
    hub: FanoutHub = websocket.app.state.hub
    buffer = int(websocket.app.state.config.realtime.subscriber_buffer)
    client = websocket.client.host if websocket.client else "unknown"
    subscriber = QueueSubscriber(maxsize=buffer, name=f"ws:{client}")
    sender = asyncio.create_task(_pump(websocket, subscriber))
    logger.info("Realtime client connected: %r", subscriber)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                message = None
            # Replies share the event queue so a single task owns the socket's send side.
            await subscriber.send(handle_command(hub, subscriber, message))
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe_all(subscriber)
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        logger.info("Realtime client disconnected: %r", subscriber)


def _sse_response(
    request: Request,
    topics: list[str],
    *,
    direction: Optional[Direction] = None,
    max_frames: Optional[int] = None,
) -> StreamingResponse:
    hub: FanoutHub = request.app.state.hub
    realtime = request.app.state.config.realtime
    subscriber = QueueSubscriber(maxsize=int(realtime.subscriber_buffer), name=f"sse:{topics[0]}")
    # Join before the first byte is sent so nothing published after the request is missed.
    for topic in topics:
        hub.subscribe(subscriber, topic)

    async def event_stream():
        sent = 0
        try:
            yield b": connected\n\n"
            sent += 1
            while max_frames is None or sent < max_frames:
                if await request.is_disconnected():
                    return
                event = await subscriber.get(timeout=float(realtime.sse_keepalive_seconds))
                if event is None:
                    yield b": keepalive\n\n"
                elif direction is not None and event.get("direction") not in (None, direction.value):
                    continue
                else:
                    yield format_sse(event)
                sent += 1
        finally:
            hub.unsubscribe_all(subscriber)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/stream/corridor/{key}")
async def stream_corridor(
    request: Request,
    key: str,
    direction: Optional[Direction] = Query(default=None),
    max_frames: Optional[int] = Query(default=None, ge=1, le=10000),
) -> StreamingResponse:
    return _sse_response(request, [corridor_topic(key)], direction=direction, max_frames=max_frames)


@router.get("/stream/trip/{trip_id}")
async def stream_trip(
    request: Request,
    trip_id: str,
    max_frames: Optional[int] = Query(default=None, ge=1, le=10000),
) -> StreamingResponse:
    return _sse_response(request, [trip_topic(trip_id)], max_frames=max_frames)
