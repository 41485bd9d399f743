from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from corridortrack.realtime.fanout import FanoutHub, QueueSubscriber, corridor_topic, vehicle_topic
from corridortrack.settings import AppConfig
from corridortrack.storage.trips import JsonTripRepository, MemoryTripRepository
from corridortrack.tracking.corridors import Corridor, CorridorStore
from corridortrack.tracking.errors import MalformedInput, NotFound
from corridortrack.tracking.trips import TrackingPolicy, TripManager, TripStatus


T0 = datetime(2026, 3, 2, 7, 30, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class _SlowRepository(MemoryTripRepository):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay
        self.slow_ids: set[str] = set()

    async def save(self, doc) -> None:  # type: ignore[no-untyped-def]
        # Only the next save of each listed trip is slow.
        if doc["id"] in self.slow_ids:
            self.slow_ids.discard(doc["id"])
            await asyncio.sleep(self.delay)
        await super().save(doc)


def _corridor() -> Corridor:
    geometry = ((0.0, 0.0), (0.0, 1.0), (0.0, 2.0))
    return Corridor(
        key="meridian",
        name="Meridian",
        geometry=geometry,
        simplified_geometry=geometry,
        cumulative_distances=(0.0, 111000.0, 222000.0),
        length_meters=222000.0,
    )


def _ids(*values: str):  # type: ignore[no-untyped-def]
    it = iter(values)
    return lambda: next(it)


def _manager(**kwargs) -> TripManager:  # type: ignore[no-untyped-def]
    kwargs.setdefault("clock", _Clock())
    return TripManager(CorridorStore(corridors=[_corridor()]), **kwargs)


def test_location_update_projects_and_estimates() -> None:
    manager = _manager(id_factory=_ids("trip-1"))

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.start("KA-01-1234", "meridian", "forward")
        return await manager.update_location("trip-1", (0.0, 0.5), speed=0)

    trip = asyncio.run(scenario())

    assert trip.progress is not None
    assert trip.progress.meters == pytest.approx(55500.0, abs=1e-3)
    assert trip.progress.percent == pytest.approx(25.0)
    assert trip.eta is not None and trip.eta.used_default_speed
    # 166.5 km left at 45 km/h.
    assert trip.eta.eta_seconds == 13320
    view = trip.to_view()
    assert view["lastLocation"] == {"type": "Point", "coordinates": [0.0, 0.5]}
    assert view["progress"] == {"meters": 55500.0, "percent": 25.0}


def test_starting_again_supersedes_the_previous_trip() -> None:
    hub = FanoutHub()
    manager = _manager(hub=hub, id_factory=_ids("trip-1", "trip-2"))

    async def scenario():  # type: ignore[no-untyped-def]
        listener = QueueSubscriber()
        hub.subscribe(listener, vehicle_topic("KA-01"))
        await manager.start("KA-01", "meridian", "forward", location=(0.0, 0.1))
        await manager.start("KA-01", "meridian", "reverse")
        events = []
        while not listener.queue.empty():
            events.append(listener.queue.get_nowait())
        return events

    events = asyncio.run(scenario())

    assert [e["type"] for e in events] == ["trip-start", "trip-end", "trip-start"]
    assert manager.get("trip-1").status is TripStatus.ENDED
    active = manager.list_active("meridian")
    assert [t.id for t in active] == ["trip-2"]
    # No location on the second start: the vehicle's last known fix is reused.
    assert active[0].last_location == (0.0, 0.1)
    assert active[0].progress is not None


def test_unknown_corridor_and_bad_direction_fail_without_creating_trips() -> None:
    manager = _manager(id_factory=_ids("trip-1"))

    with pytest.raises(NotFound):
        asyncio.run(manager.start("KA-01", "nowhere", "forward"))
    with pytest.raises(MalformedInput):
        asyncio.run(manager.start("KA-01", "meridian", "up"))

    assert manager.active_trip_for("KA-01") is None


def test_update_on_unknown_or_ended_trip_is_rejected_without_events() -> None:
    hub = FanoutHub()
    manager = _manager(hub=hub, id_factory=_ids("trip-1"))

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.start("KA-01", "meridian", "forward")
        await manager.end("trip-1")
        listener = QueueSubscriber()
        hub.subscribe(listener, corridor_topic("meridian"))
        for trip_id in ("trip-1", "does-not-exist"):
            with pytest.raises(NotFound):
                await manager.update_location(trip_id, (0.0, 0.5))
        with pytest.raises(NotFound):
            await manager.end("trip-1")
        return listener.queue.qsize()

    assert asyncio.run(scenario()) == 0
    assert manager.get("trip-1").ended_at == T0


def test_malformed_fix_leaves_the_trip_untouched() -> None:
    manager = _manager(id_factory=_ids("trip-1"))

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.start("KA-01", "meridian", "forward", location=(0.0, 0.5))
        for bad in [(0.0, 95.0), (float("inf"), 0.0), None]:
            with pytest.raises(MalformedInput):
                await manager.update_location("trip-1", bad)  # type: ignore[arg-type]
        with pytest.raises(MalformedInput):
            await manager.update_location("trip-1", (0.0, 0.6), speed=float("nan"))

    asyncio.run(scenario())

    assert manager.get("trip-1").last_location == (0.0, 0.5)


def test_update_from_another_vehicle_is_not_found() -> None:
    manager = _manager(id_factory=_ids("trip-1"))

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.start("KA-01", "meridian", "forward")
        await manager.update_location("trip-1", (0.0, 0.2), vehicle_ref="KA-99")

    with pytest.raises(NotFound):
        asyncio.run(scenario())


def test_stale_trips_are_hidden_then_reaped_and_purged() -> None:
    clock = _Clock()
    manager = _manager(
        clock=clock,
        id_factory=_ids("old", "fresh"),
        policy=TrackingPolicy(freshness_window_seconds=300, ended_retention_seconds=600),
    )

    async def setup() -> None:
        await manager.start("KA-01", "meridian", "forward", location=(0.0, 0.1))
        clock.advance(400)
        await manager.start("KA-02", "meridian", "forward", location=(0.0, 0.2))

    asyncio.run(setup())

    assert [t.id for t in manager.list_active("meridian")] == ["fresh"]
    assert [t.id for t in manager.list_active("meridian", "reverse")] == []

    first = asyncio.run(manager.reap())
    assert first.ended == ["old"]
    assert manager.get("old").status is TripStatus.ENDED
    assert manager.active_trip_for("KA-01") is None

    clock.advance(601)
    second = asyncio.run(manager.reap())
    assert second.purged == ["old"]
    assert "fresh" in second.ended
    with pytest.raises(NotFound):
        manager.get("old")


@pytest.mark.parametrize(
    ("policy", "expected_meters"),
    [
        ("accept", 44400.0),
        ("hold", 55500.0),
        ("threshold", 55500.0),
    ],
)
def test_backtrack_policies(policy: str, expected_meters: float) -> None:
    manager = _manager(
        id_factory=_ids("trip-1"),
        policy=TrackingPolicy(backtrack_policy=policy, max_backtrack_meters=150.0),
    )

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.start("KA-01", "meridian", "forward", location=(0.0, 0.5))
        return await manager.update_location("trip-1", (0.0, 0.4))

    trip = asyncio.run(scenario())

    assert trip.progress is not None
    assert trip.progress.meters == pytest.approx(expected_meters, abs=1e-3)
    assert trip.last_location == (0.0, 0.4)


def test_threshold_policy_accepts_small_regressions() -> None:
    manager = _manager(
        id_factory=_ids("trip-1"),
        policy=TrackingPolicy(backtrack_policy="threshold", max_backtrack_meters=150.0),
    )

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.start("KA-01", "meridian", "forward", location=(0.0, 0.5))
        return await manager.update_location("trip-1", (0.0, 0.4991))

    trip = asyncio.run(scenario())

    assert trip.progress is not None
    assert trip.progress.meters == pytest.approx(55400.1, abs=1e-3)


def test_updates_to_different_trips_do_not_wait_on_each_other() -> None:
    repository = _SlowRepository(delay=0.5)
    manager = _manager(repository=repository, id_factory=_ids("trip-a", "trip-b"))

    async def scenario() -> tuple[float, bool]:
        await manager.start("BUS-A", "meridian", "forward")
        await manager.start("BUS-B", "meridian", "forward")
        repository.slow_ids = {"trip-a"}

        slow = asyncio.create_task(manager.update_location("trip-a", (0.0, 0.3)))
        await asyncio.sleep(0.01)
        started = time.perf_counter()
        await asyncio.wait_for(manager.update_location("trip-b", (0.0, 0.6)), timeout=0.25)
        elapsed = time.perf_counter() - started
        still_running = not slow.done()
        await slow
        return elapsed, still_running

    elapsed, still_running = asyncio.run(scenario())

    assert elapsed < 0.25
    assert still_running


def _percents_after_a_glitch(policy: TrackingPolicy) -> tuple[list[float], object]:
    manager = _manager(id_factory=_ids("trip-1"), policy=policy)

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.start("KA-01", "meridian", "forward", location=(0.0, 0.1))
        # One multipath fix near the end of the line, then the bus keeps moving from 0.1.
        await manager.update_location("trip-1", (0.0, 1.99))
        percents = []
        for lat in (0.12, 0.14, 0.16):
            trip = await manager.update_location("trip-1", (0.0, lat))
            assert trip.progress is not None
            percents.append(trip.progress.percent)
        return percents, trip

    return asyncio.run(scenario())


def test_default_backtrack_policy_follows_fixes_after_a_glitch() -> None:
    assert AppConfig().tracking.backtrack_policy == "accept"

    percents, _ = _percents_after_a_glitch(TrackingPolicy())

    assert percents == pytest.approx([6.0, 7.0, 8.0])


def test_hold_policy_releases_after_consecutive_regressing_fixes() -> None:
    percents, trip = _percents_after_a_glitch(
        TrackingPolicy(backtrack_policy="hold", backtrack_confirm_fixes=3)
    )

    assert percents == pytest.approx([99.5, 99.5, 8.0])
    assert trip.held_fixes == 0  # type: ignore[attr-defined]
    # 204.24 km left at 45 km/h.
    assert trip.eta.eta_seconds == pytest.approx(16339, abs=1)  # type: ignore[attr-defined]


def test_updates_to_one_trip_apply_in_receipt_order() -> None:
    repository = _SlowRepository(delay=0.3)
    manager = _manager(repository=repository, id_factory=_ids("trip-1"))

    async def scenario() -> bool:
        await manager.start("KA-01", "meridian", "forward")
        repository.slow_ids = {"trip-1"}

        first = asyncio.create_task(manager.update_location("trip-1", (0.0, 0.3), speed=20.0))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(manager.update_location("trip-1", (0.0, 0.6), speed=40.0))
        await asyncio.sleep(0.05)
        second_waited = not second.done()
        await first
        await second
        return second_waited

    second_waited = asyncio.run(scenario())

    assert second_waited
    trip = manager.get("trip-1")
    assert trip.last_location == (0.0, 0.6)
    assert trip.last_speed == 40.0
    assert trip.progress is not None
    assert trip.progress.meters == pytest.approx(66600.0, abs=1e-3)
    assert trip.progress.percent == pytest.approx(30.0)


def test_start_survives_previous_trip_ending_concurrently() -> None:
    repository = _SlowRepository(delay=0.2)
    manager = _manager(repository=repository, id_factory=_ids("trip-1", "trip-2"))

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.start("KA-01", "meridian", "forward", location=(0.0, 0.1))
        repository.slow_ids = {"trip-1"}
        ending = asyncio.create_task(manager.end("trip-1"))
        await asyncio.sleep(0.01)
        started = await manager.start("KA-01", "meridian", "forward")
        return started, await ending

    started, ended = asyncio.run(scenario())

    assert started.id == "trip-2" and started.is_active
    assert ended.status is TripStatus.ENDED
    assert manager.get("trip-1").status is TripStatus.ENDED
    active = manager.active_trip_for("KA-01")
    assert active is not None and active.id == "trip-2"
    assert [t.id for t in manager.list_active("meridian")] == ["trip-2"]


def test_reaper_forgets_vehicles_idle_past_retention() -> None:
    clock = _Clock()
    manager = _manager(
        clock=clock,
        id_factory=_ids("trip-1", "trip-2"),
        policy=TrackingPolicy(freshness_window_seconds=300, ended_retention_seconds=600),
    )

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.start("KA-01", "meridian", "forward", location=(0.0, 0.1))
        await manager.end("trip-1")
        clock.advance(601)
        await manager.reap()
        forgotten = "KA-01" not in manager._last_known and "KA-01" not in manager._vehicle_locks
        return forgotten, await manager.start("KA-01", "meridian", "forward")

    forgotten, trip = asyncio.run(scenario())

    assert forgotten
    # The old fix is gone, so the new trip waits for its first update.
    assert trip.last_location is None
    assert trip.progress is None


def test_json_repository_rehydrates_active_trips(tmp_path: Path) -> None:
    repository = JsonTripRepository(tmp_path / "trips")
    manager = _manager(repository=repository, id_factory=_ids("trip-1", "trip-2"))

    async def scenario() -> None:
        await manager.start("KA-01", "meridian", "forward", location=(0.0, 0.5), speed=30.0)
        await manager.start("KA-02", "meridian", "reverse")
        await manager.end("trip-2")

    asyncio.run(scenario())

    restored = _manager(repository=JsonTripRepository(tmp_path / "trips"))
    assert restored.rehydrate() == 2
    active = restored.active_trip_for("KA-01")
    assert active is not None and active.id == "trip-1"
    assert active.progress is not None and active.progress.percent == pytest.approx(25.0)
    assert active.eta is not None and active.eta.speed_kmph == 30.0
    assert restored.active_trip_for("KA-02") is None
    assert restored.get("trip-2").status is TripStatus.ENDED
