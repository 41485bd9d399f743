"""Consumer-side view of the vehicles on one corridor.

Two independent feeds update the same `CorridorView`:
- snapshot polling of `GET /corridor/{key}/active`, always running, with capped exponential
  backoff on rate limits and transport failures;
- the SSE push stream `GET /stream/corridor/{key}`, reconnecting with its own backoff.

Push failing never speeds up polling; polling is the designed fallback and keeps running
regardless of push state.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httpx

from corridortrack.settings import ClientSection
from corridortrack.tracking.errors import RateLimited, TransportDegraded, classify_transport_error
from corridortrack.utils.time import parse_datetime

logger = logging.getLogger(__name__)

TripItem = dict[str, Any]


@dataclass
class Backoff:
    """Capped exponential interval: doubles per failure, back to base on success.

    `current()` is the interval in effect before the next attempt. Starting from a 2 s base, three
    rate-limited polls therefore run 2 s, 4 s and 8 s apart; each `record_failure` returns the
    already-doubled wait for the following poll (4, 8, 16), and one success returns to 2 s.
    """

    base_seconds: float
    max_seconds: float
    multiplier: float = 2.0
    failures: int = 0

    def current(self) -> float:
        delay = self.base_seconds * (self.multiplier**self.failures)
        return min(self.max_seconds, max(0.0, delay))

    def record_failure(self, retry_after_seconds: Optional[float] = None) -> float:
        self.failures += 1
        delay = self.current()
        if retry_after_seconds is not None:
            delay = max(delay, retry_after_seconds)
        return delay

    def record_success(self) -> float:
        self.failures = 0
        return self.current()


def _parse_retry_after_seconds(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _updated_at(item: TripItem) -> Optional[datetime]:
    value = item.get("updatedAt")
    if not value:
        return None
    try:
        return parse_datetime(str(value))
    except ValueError:
        return None


def _is_older(candidate: TripItem, existing: TripItem) -> bool:
    new_ts = _updated_at(candidate)
    old_ts = _updated_at(existing)
    return new_ts is not None and old_ts is not None and new_ts < old_ts


class CorridorView:
    """Local trips-on-corridor state, keyed by trip id."""

    def __init__(self) -> None:
        self._items: dict[str, TripItem] = {}

    def apply_snapshot(self, items: list[TripItem]) -> None:
        """Replace the view with a snapshot, keeping any entry a push event already made newer."""

        merged: dict[str, TripItem] = {}
        for item in items:
            trip_id = item.get("tripId")
            if not trip_id:
                continue
            existing = self._items.get(str(trip_id))
            if existing is not None and _is_older(item, existing):
                merged[str(trip_id)] = existing
            else:
                merged[str(trip_id)] = dict(item)
        self._items = merged

    def apply_event(self, event: dict[str, Any]) -> None:
        trip_id = event.get("tripId")
        if not trip_id:
            return
        trip_id = str(trip_id)
        event_type = event.get("type")
        if event_type == "trip-end":
            self._items.pop(trip_id, None)
            return
        if event_type not in {"location", "trip-start"}:
            return
        existing = self._items.get(trip_id, {})
        if existing and _is_older(event, existing):
            return
        payload = {k: v for k, v in event.items() if k != "type"}
        self._items[trip_id] = {**existing, **payload}

    def get(self, trip_id: str) -> Optional[TripItem]:
        return self._items.get(trip_id)

    def trips(self) -> list[TripItem]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, trip_id: object) -> bool:
        return trip_id in self._items


class CorridorReconciler:
    def __init__(
        self,
        corridor_key: str,
        *,
        direction: Optional[str] = None,
        config: Optional[ClientSection] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        view: Optional[CorridorView] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.corridor_key = corridor_key
        self.direction = direction
        self.config = config or ClientSection()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.request_timeout_seconds,
            headers={"accept": "application/json"},
        )
        self.view = view or CorridorView()
        self._sleep = sleep
        self.poll_backoff = Backoff(
            base_seconds=self.config.poll_base_seconds,
            max_seconds=self.config.poll_max_seconds,
            multiplier=self.config.backoff_multiplier,
        )
        self.push_backoff = Backoff(
            base_seconds=self.config.push_base_seconds,
            max_seconds=self.config.push_max_seconds,
            multiplier=self.config.backoff_multiplier,
        )
        self.push_connected = False

    @property
    def poll_interval(self) -> float:
        return self.poll_backoff.current()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _retry_after(self, response: httpx.Response) -> Optional[float]:
        if not self.config.respect_retry_after:
            return None
        return _parse_retry_after_seconds(response.headers.get("retry-after"))

    async def fetch_snapshot(self) -> list[TripItem]:
        params = {"direction": self.direction} if self.direction else None
        try:
            response = await self._http.get(f"/corridor/{self.corridor_key}/active", params=params)
        except httpx.HTTPError as exc:
            raise TransportDegraded(f"Snapshot request failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimited("Snapshot polling rate limited.", self._retry_after(response))
        try:
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPStatusError, ValueError) as exc:
            raise TransportDegraded(f"Snapshot response unusable: {exc}") from exc

        items = payload.get("items") if isinstance(payload, dict) else payload
        return [item for item in (items or []) if isinstance(item, dict)]

    async def poll_once(self) -> float:
        """Fetch one snapshot into the view; returns the interval until the next poll."""

        try:
            items = await self.fetch_snapshot()
        except RateLimited as exc:
            delay = self.poll_backoff.record_failure(exc.retry_after_seconds)
            logger.warning("Corridor %s snapshot rate limited; next poll in %.1fs.", self.corridor_key, delay)
            return delay
        except TransportDegraded as exc:
            delay = self.poll_backoff.record_failure()
            info = classify_transport_error(exc)
            logger.warning(
                "Corridor %s snapshot failed (%s); next poll in %.1fs.", self.corridor_key, info.code, delay
            )
            return delay

        self.view.apply_snapshot(items)
        return self.poll_backoff.record_success()

    async def push_once(self) -> None:
        """Consume the SSE stream until it closes, merging every event into the view."""

        params = {"direction": self.direction} if self.direction else None
        timeout = httpx.Timeout(self.config.request_timeout_seconds, read=None)
        try:
            async with self._http.stream(
                "GET", f"/stream/corridor/{self.corridor_key}", params=params, timeout=timeout
            ) as response:
                if response.status_code == 429:
                    raise RateLimited("Push stream rate limited.", self._retry_after(response))
                if response.status_code >= 400:
                    raise TransportDegraded(f"Push stream returned HTTP {response.status_code}.")

                self.push_connected = True
                self.push_backoff.record_success()
                logger.info("Corridor %s push stream connected.", self.corridor_key)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[len("data:"):].strip())
                    except json.JSONDecodeError:
                        logger.debug("Ignoring malformed push payload: %s", line)
                        continue
                    if isinstance(event, dict):
                        self.view.apply_event(event)
        except httpx.HTTPError as exc:
            raise TransportDegraded(f"Push stream failed: {exc}") from exc
        finally:
            self.push_connected = False

    async def _poll_loop(self) -> None:
        while True:
            delay = await self.poll_once()
            await self._sleep(delay)

    async def _push_loop(self) -> None:
        while True:
            try:
                await self.push_once()
                delay = self.push_backoff.current()
            except RateLimited as exc:
                delay = self.push_backoff.record_failure(exc.retry_after_seconds)
                logger.warning("Push stream rate limited; reconnecting in %.1fs.", delay)
            except TransportDegraded as exc:
                delay = self.push_backoff.record_failure()
                logger.warning(
                    "Push stream degraded (%s); reconnecting in %.1fs.", classify_transport_error(exc).code, delay
                )
            await self._sleep(delay)

    async def run(self, *, push: bool = True) -> None:
        """Run polling (always) and push (optional) until cancelled."""

        tasks = [asyncio.create_task(self._poll_loop(), name=f"poll:{self.corridor_key}")]
        if push:
            tasks.append(asyncio.create_task(self._push_loop(), name=f"push:{self.corridor_key}"))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
