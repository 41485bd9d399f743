"""Trip lifecycle: the set of active vehicle journeys and the hot location-update path.

Each trip is an immutable snapshot that is replaced on every accepted write, so readers such as
`list_active` never observe a half-applied update. Writes to one trip are serialised by a
per-trip `asyncio.Lock`; unrelated trips never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Union

from corridortrack.realtime.fanout import (
    EVENT_LOCATION,
    EVENT_TRIP_END,
    EVENT_TRIP_START,
    Event,
    FanoutHub,
    corridor_topic,
    trip_topic,
    vehicle_topic,
)
from corridortrack.settings import AppConfig
from corridortrack.storage.trips import MemoryTripRepository, TripDocument, TripRepository
from corridortrack.tracking.corridors import Corridor, CorridorStore
from corridortrack.tracking.errors import MalformedInput, NotFound
from corridortrack.tracking.eta import EtaEstimate, EtaSpec, estimate, eta_spec_from_config
from corridortrack.tracking.projector import Direction, Progress, parse_direction, project
from corridortrack.utils.geo import LonLat, is_valid_lonlat
from corridortrack.utils.time import isoformat_z, parse_datetime, utc_now

logger = logging.getLogger(__name__)


class TripStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


@dataclass(frozen=True)
class TrackingPolicy:
    freshness_window_seconds: float = 300.0
    ended_retention_seconds: float = 600.0
    # accept: raw projection | hold: keep previous progress | threshold: small regressions only
    backtrack_policy: str = "accept"
    max_backtrack_meters: float = 150.0
    # Consecutive regressing fixes after which hold/threshold give way to the raw projection.
    backtrack_confirm_fixes: int = 3


def tracking_policy_from_config(config: AppConfig) -> TrackingPolicy:
    section = config.tracking
    return TrackingPolicy(
        freshness_window_seconds=float(section.freshness_window_seconds),
        ended_retention_seconds=float(section.ended_retention_seconds),
        backtrack_policy=section.backtrack_policy,
        max_backtrack_meters=float(section.max_backtrack_meters),
        backtrack_confirm_fixes=int(section.backtrack_confirm_fixes),
    )


@dataclass(frozen=True)
class Trip:
    id: str
    vehicle_ref: str
    corridor_key: str
    direction: Direction
    started_at: datetime
    updated_at: datetime
    status: TripStatus = TripStatus.ACTIVE
    last_location: Optional[LonLat] = None
    last_speed: Optional[float] = None
    last_heading: Optional[float] = None
    progress: Optional[Progress] = None
    eta: Optional[EtaEstimate] = None
    ended_at: Optional[datetime] = None
    # Consecutive fixes whose regression was held back.
    held_fixes: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is TripStatus.ACTIVE

    def to_view(self) -> dict[str, Any]:
        """Wire shape shared by the snapshot endpoints and realtime events."""

        return {
            "tripId": self.id,
            "vehicleRef": self.vehicle_ref,
            "corridorKey": self.corridor_key,
            "direction": self.direction.value,
            "status": self.status.value,
            "lastLocation": (
                {"type": "Point", "coordinates": list(self.last_location)}
                if self.last_location is not None
                else None
            ),
            "speed": self.last_speed,
            "heading": self.last_heading,
            "progress": self.progress.as_dict() if self.progress is not None else None,
            "eta": isoformat_z(self.eta.arrival_time) if self.eta is not None else None,
            "etaSeconds": self.eta.eta_seconds if self.eta is not None else None,
            "startedAt": isoformat_z(self.started_at),
            "updatedAt": isoformat_z(self.updated_at),
            "endedAt": isoformat_z(self.ended_at),
        }

    def to_document(self) -> TripDocument:
        progress = None
        if self.progress is not None:
            progress = {
                "meters": self.progress.meters,
                "percent": self.progress.percent,
                "segment_index": self.progress.segment_index,
                "offset_meters": self.progress.offset_meters,
            }
        eta = None
        if self.eta is not None:
            eta = {
                "eta_seconds": self.eta.eta_seconds,
                "arrival_time": isoformat_z(self.eta.arrival_time),
                "speed_kmph": self.eta.speed_kmph,
                "used_default_speed": self.eta.used_default_speed,
            }
        return {
            "id": self.id,
            "vehicle_ref": self.vehicle_ref,
            "corridor_key": self.corridor_key,
            "direction": self.direction.value,
            "status": self.status.value,
            "last_location": list(self.last_location) if self.last_location is not None else None,
            "last_speed": self.last_speed,
            "last_heading": self.last_heading,
            "progress": progress,
            "eta": eta,
            "started_at": isoformat_z(self.started_at),
            "updated_at": isoformat_z(self.updated_at),
            "ended_at": isoformat_z(self.ended_at),
            "held_fixes": self.held_fixes,
        }

    @classmethod
    def from_document(cls, doc: TripDocument) -> "Trip":
        progress_doc = doc.get("progress")
        eta_doc = doc.get("eta")
        location = doc.get("last_location")
        ended_at = doc.get("ended_at")
        return cls(
            id=str(doc["id"]),
            vehicle_ref=str(doc["vehicle_ref"]),
            corridor_key=str(doc["corridor_key"]),
            direction=Direction(doc["direction"]),
            status=TripStatus(doc.get("status", "active")),
            started_at=parse_datetime(doc["started_at"]),
            updated_at=parse_datetime(doc["updated_at"]),
            ended_at=parse_datetime(ended_at) if ended_at else None,
            last_location=(float(location[0]), float(location[1])) if location else None,
            last_speed=doc.get("last_speed"),
            last_heading=doc.get("last_heading"),
            held_fixes=int(doc.get("held_fixes") or 0),
            progress=(
                Progress(
                    meters=float(progress_doc["meters"]),
                    percent=float(progress_doc["percent"]),
                    segment_index=int(progress_doc.get("segment_index", 0)),
                    offset_meters=float(progress_doc.get("offset_meters", 0.0)),
                )
                if progress_doc
                else None
            ),
            eta=(
                EtaEstimate(
                    eta_seconds=int(eta_doc["eta_seconds"]),
                    arrival_time=parse_datetime(eta_doc["arrival_time"]),
                    speed_kmph=float(eta_doc.get("speed_kmph", 0.0)),
                    used_default_speed=bool(eta_doc.get("used_default_speed", False)),
                )
                if eta_doc
                else None
            ),
        )


@dataclass(frozen=True)
class ReapResult:
    ended: list[str] = field(default_factory=list)
    purged: list[str] = field(default_factory=list)


def validate_point(point: Union[Sequence[float], None]) -> LonLat:
    if point is None:
        raise MalformedInput("Location is required (lon & lat).")
    try:
        lon, lat = point[0], point[1]
    except (TypeError, IndexError, KeyError) as exc:
        raise MalformedInput(f"Invalid location: {point!r}") from exc
    if not is_valid_lonlat(lon, lat):
        raise MalformedInput(f"Invalid coordinates: lon={lon!r}, lat={lat!r}")
    return float(lon), float(lat)


def _validate_optional_number(name: str, value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise MalformedInput(f"Invalid {name}: {value!r}")
    return float(value)


def apply_backtrack_policy(
    previous: Optional[Progress],
    current: Progress,
    policy: TrackingPolicy,
    held_fixes: int = 0,
) -> tuple[Progress, int]:
    """Pick the progress to keep for a new fix, with the updated count of held-back fixes.

    A held regression is released once `backtrack_confirm_fixes` fixes in a row agree on it, so a
    single far-ahead glitch cannot pin a trip near the corridor end.
    """

    if previous is None or policy.backtrack_policy == "accept":
        return current, 0
    regression = previous.meters - current.meters
    if regression <= 0:
        return current, 0
    if policy.backtrack_policy == "threshold" and regression <= policy.max_backtrack_meters:
        return current, 0
    held = held_fixes + 1
    if held >= policy.backtrack_confirm_fixes:
        return current, 0
    return replace(previous, offset_meters=current.offset_meters), held


class TripManager:
    def __init__(
        self,
        corridors: CorridorStore,
        hub: Optional[FanoutHub] = None,
        repository: Optional[TripRepository] = None,
        *,
        policy: TrackingPolicy = TrackingPolicy(),
        eta_spec: EtaSpec = EtaSpec(),
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.corridors = corridors
        self.hub = hub or FanoutHub()
        self.repository: TripRepository = repository or MemoryTripRepository()
        self.policy = policy
        self.eta_spec = eta_spec
        self._clock = clock
        self._new_id = id_factory

        self._trips: dict[str, Trip] = {}
        self._active_by_vehicle: dict[str, str] = {}
        # vehicle -> (location, speed, seen at)
        self._last_known: dict[str, tuple[LonLat, Optional[float], datetime]] = {}
        self._trip_locks: dict[str, asyncio.Lock] = {}
        self._vehicle_locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        corridors: CorridorStore,
        hub: FanoutHub,
        repository: TripRepository,
    ) -> "TripManager":
        return cls(
            corridors,
            hub,
            repository,
            policy=tracking_policy_from_config(config),
            eta_spec=eta_spec_from_config(config.eta),
        )

    def rehydrate(self) -> int:
        """Load persisted trips into memory (used once at startup)."""

        trips = [Trip.from_document(doc) for doc in self.repository.load_all()]
        self._trips = {trip.id: trip for trip in trips}
        self._active_by_vehicle = {}
        for trip in sorted(trips, key=lambda t: t.started_at):
            if trip.is_active:
                self._active_by_vehicle[trip.vehicle_ref] = trip.id
            if trip.last_location is not None:
                self._last_known[trip.vehicle_ref] = (
                    trip.last_location,
                    trip.last_speed,
                    trip.updated_at,
                )
        logger.info("Rehydrated %s trip(s), %s active.", len(trips), len(self._active_by_vehicle))
        return len(trips)

    def _trip_lock(self, trip_id: str) -> asyncio.Lock:
        lock = self._trip_locks.get(trip_id)
        if lock is None:
            lock = self._trip_locks[trip_id] = asyncio.Lock()
        return lock

    def _vehicle_lock(self, vehicle_ref: str) -> asyncio.Lock:
        lock = self._vehicle_locks.get(vehicle_ref)
        if lock is None:
            lock = self._vehicle_locks[vehicle_ref] = asyncio.Lock()
        return lock

    def _require_active(self, trip_id: str, vehicle_ref: Optional[str]) -> Trip:
        trip = self._trips.get(trip_id)
        if trip is None or not trip.is_active:
            raise NotFound(f"Active trip not found: {trip_id}")
        if vehicle_ref is not None and trip.vehicle_ref != vehicle_ref:
            raise NotFound(f"Active trip not found: {trip_id}")
        return trip

    def _derive(
        self,
        trip: Trip,
        corridor: Corridor,
        point: LonLat,
        speed: Optional[float],
    ) -> tuple[Progress, Optional[EtaEstimate], int]:
        progress, held_fixes = apply_backtrack_policy(
            trip.progress, project(point, corridor, trip.direction), self.policy, trip.held_fixes
        )
        eta = estimate(
            corridor.length_meters - progress.meters,
            corridor.length_meters,
            speed,
            spec=self.eta_spec,
            now=self._clock(),
        )
        return progress, eta, held_fixes

    async def _commit(self, trip: Trip) -> None:
        await self.repository.save(trip.to_document())
        self._trips[trip.id] = trip

    async def _publish(self, event_type: str, trip: Trip) -> int:
        if event_type == EVENT_TRIP_END:
            event: Event = {
                "type": event_type,
                "tripId": trip.id,
                "vehicleRef": trip.vehicle_ref,
                "corridorKey": trip.corridor_key,
                "direction": trip.direction.value,
                "updatedAt": isoformat_z(trip.updated_at),
            }
        else:
            event = {"type": event_type, **trip.to_view()}
        topics = (trip_topic(trip.id), vehicle_topic(trip.vehicle_ref), corridor_topic(trip.corridor_key))
        try:
            return await self.hub.publish(topics, event)
        except Exception:  # noqa: BLE001 - subscriber health never fails the vehicle-side call
            logger.exception("Fan-out of %s for trip %s failed.", event_type, trip.id)
            return 0

    async def start(
        self,
        vehicle_ref: str,
        corridor_key: str,
        direction: Union[str, Direction] = Direction.FORWARD,
        *,
        location: Optional[Sequence[float]] = None,
        speed: Optional[float] = None,
    ) -> Trip:
        """Start a trip, ending any active trip of the same vehicle first."""

        if not vehicle_ref:
            raise MalformedInput("vehicle_ref is required.")
        parsed_direction = parse_direction(direction)
        point = validate_point(location) if location is not None else None
        speed = _validate_optional_number("speed", speed)
        corridor = self.corridors.get(corridor_key)

        async with self._vehicle_lock(vehicle_ref):
            previous_id = self._active_by_vehicle.get(vehicle_ref)
            if previous_id is not None:
                try:
                    await self._end(previous_id, reason="superseded")
                except NotFound:
                    # Already ended by end() or the reaper while this call waited for its lock.
                    pass

            if point is None and vehicle_ref in self._last_known:
                point, last_speed, _ = self._last_known[vehicle_ref]
                speed = speed if speed is not None else last_speed

            now = self._clock()
            trip = Trip(
                id=self._new_id(),
                vehicle_ref=vehicle_ref,
                corridor_key=corridor.key,
                direction=parsed_direction,
                started_at=now,
                updated_at=now,
                last_location=point,
                last_speed=speed,
            )
            if point is not None:
                progress, eta, _ = self._derive(trip, corridor, point, speed)
                trip = replace(trip, progress=progress, eta=eta)

            await self._commit(trip)
            self._active_by_vehicle[vehicle_ref] = trip.id
            if point is not None:
                self._last_known[vehicle_ref] = (point, speed, now)
            logger.info(
                "Trip %s started: vehicle=%s corridor=%s direction=%s",
                trip.id,
                vehicle_ref,
                corridor.key,
                parsed_direction.value,
            )
            await self._publish(EVENT_TRIP_START, trip)
        return trip

    async def update_location(
        self,
        trip_id: str,
        point: Sequence[float],
        speed: Optional[float] = None,
        heading: Optional[float] = None,
        *,
        vehicle_ref: Optional[str] = None,
    ) -> Trip:
        """Apply one GPS fix to an active trip and fan the result out."""

        location = validate_point(point)
        speed = _validate_optional_number("speed", speed)
        heading = _validate_optional_number("heading", heading)

        if trip_id not in self._trips:
            raise NotFound(f"Active trip not found: {trip_id}")
        async with self._trip_lock(trip_id):
            trip = self._require_active(trip_id, vehicle_ref)
            corridor = self.corridors.get(trip.corridor_key)
            effective_speed = speed if speed is not None else trip.last_speed
            progress, eta, held_fixes = self._derive(trip, corridor, location, effective_speed)
            updated = replace(
                trip,
                last_location=location,
                last_speed=effective_speed,
                last_heading=heading if heading is not None else trip.last_heading,
                progress=progress,
                eta=eta,
                held_fixes=held_fixes,
                updated_at=self._clock(),
            )
            await self._commit(updated)
            self._last_known[trip.vehicle_ref] = (location, effective_speed, updated.updated_at)
            await self._publish(EVENT_LOCATION, updated)
        return updated

    async def _end(
        self,
        trip_id: str,
        *,
        vehicle_ref: Optional[str] = None,
        stale_before: Optional[datetime] = None,
        reason: str = "requested",
    ) -> Optional[Trip]:
        if trip_id not in self._trips:
            raise NotFound(f"Active trip not found: {trip_id}")
        async with self._trip_lock(trip_id):
            trip = self._require_active(trip_id, vehicle_ref)
            if stale_before is not None and trip.updated_at >= stale_before:
                return None
            now = self._clock()
            ended = replace(trip, status=TripStatus.ENDED, updated_at=now, ended_at=now)
            await self._commit(ended)
            if self._active_by_vehicle.get(trip.vehicle_ref) == trip_id:
                del self._active_by_vehicle[trip.vehicle_ref]
            logger.info("Trip %s ended (%s).", trip_id, reason)
            await self._publish(EVENT_TRIP_END, ended)
        return ended

    async def end(self, trip_id: str, *, vehicle_ref: Optional[str] = None) -> Trip:
        ended = await self._end(trip_id, vehicle_ref=vehicle_ref)
        if ended is None:
            raise NotFound(f"Active trip not found: {trip_id}")
        return ended

    def get(self, trip_id: str) -> Trip:
        trip = self._trips.get(trip_id)
        if trip is None:
            raise NotFound(f"Trip not found: {trip_id}")
        return trip

    def active_trip_for(self, vehicle_ref: str) -> Optional[Trip]:
        trip_id = self._active_by_vehicle.get(vehicle_ref)
        return self._trips.get(trip_id) if trip_id is not None else None

    def list_active(
        self,
        corridor_key: str,
        direction: Union[str, Direction, None] = None,
        *,
        now: Optional[datetime] = None,
    ) -> list[Trip]:
        """Active, fresh trips on a corridor; stale trips are hidden even before they are reaped."""

        wanted = parse_direction(direction) if direction is not None else None
        cutoff = (now or self._clock()) - timedelta(seconds=self.policy.freshness_window_seconds)
        trips = [
            trip
            for trip in list(self._trips.values())
            if trip.is_active
            and trip.corridor_key == corridor_key
            and (wanted is None or trip.direction is wanted)
            and trip.updated_at >= cutoff
        ]
        return sorted(trips, key=lambda t: t.started_at)

    async def reap(self, now: Optional[datetime] = None) -> ReapResult:
        """End trips that stopped reporting; forget ended trips and idle vehicles past retention."""

        current = now or self._clock()
        stale_before = current - timedelta(seconds=self.policy.freshness_window_seconds)
        purge_before = current - timedelta(seconds=self.policy.ended_retention_seconds)
        result = ReapResult()

        for trip in list(self._trips.values()):
            if trip.is_active and trip.updated_at < stale_before:
                try:
                    ended = await self._end(trip.id, stale_before=stale_before, reason="stale")
                except NotFound:
                    continue
                if ended is not None:
                    result.ended.append(trip.id)

        for trip in list(self._trips.values()):
            if trip.is_active or trip.ended_at is None or trip.ended_at >= purge_before:
                continue
            await self.repository.delete(trip.id)
            self._trips.pop(trip.id, None)
            lock = self._trip_locks.get(trip.id)
            if lock is not None and not lock.locked():
                del self._trip_locks[trip.id]
            result.purged.append(trip.id)

        self._forget_idle_vehicles(purge_before)

        if result.ended or result.purged:
            logger.info("Reaper ended %s stale trip(s), purged %s.", len(result.ended), len(result.purged))
        return result

    def _forget_idle_vehicles(self, idle_before: datetime) -> None:
        for vehicle_ref, (_, _, seen_at) in list(self._last_known.items()):
            if vehicle_ref not in self._active_by_vehicle and seen_at < idle_before:
                del self._last_known[vehicle_ref]
        for vehicle_ref, lock in list(self._vehicle_locks.items()):
            if (
                vehicle_ref not in self._active_by_vehicle
                and vehicle_ref not in self._last_known
                and not lock.locked()
            ):
                del self._vehicle_locks[vehicle_ref]

    async def run_reaper(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.reap()
            except Exception:  # noqa: BLE001 - keep the background loop alive
                logger.exception("Trip reaper pass failed.")
