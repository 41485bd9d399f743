from __future__ import annotations

import json
from pathlib import Path

import pytest

from corridortrack.tracking.corridors import (
    Corridor,
    CorridorStore,
    build_corridor,
    corridor_from_document,
    corridor_to_document,
    load_corridor_points_csv,
)
from corridortrack.tracking.errors import MalformedInput, NotFound
from corridortrack.utils.geo import encode_polyline, haversine_m, simplify_line


ROUTE = [
    {"lat": 13.00, "lng": 77.50},
    {"lat": 13.01, "lng": 77.50},
    {"lat": 13.01, "lng": 77.50},
    {"lat": 13.02, "lng": 77.51},
]


def _write_route(directory: Path, key: str, route: list[dict[str, float]] = ROUTE) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{key}.json"
    path.write_text(json.dumps({"key": key, "name": key.title(), "route": route}), encoding="utf-8")
    return path


def test_build_corridor_computes_cumulative_distances_and_drops_repeated_points() -> None:
    points = [(p["lng"], p["lat"]) for p in ROUTE]
    corridor = build_corridor("north", "North", points)

    assert len(corridor.geometry) == 3
    assert corridor.cumulative_distances[0] == 0.0
    first = haversine_m(77.50, 13.00, 77.50, 13.01)
    second = haversine_m(77.50, 13.01, 77.51, 13.02)
    assert corridor.cumulative_distances[1] == pytest.approx(first)
    assert corridor.length_meters == pytest.approx(first + second)
    assert corridor.start == (77.50, 13.00)
    assert corridor.end == (77.51, 13.02)
    assert corridor.encoded_polyline


def test_build_corridor_needs_two_distinct_points() -> None:
    with pytest.raises(MalformedInput):
        build_corridor("dot", "Dot", [(77.5, 13.0), (77.5, 13.0)])


def test_corridor_rejects_inconsistent_distance_table() -> None:
    geometry = ((0.0, 0.0), (0.0, 1.0), (0.0, 2.0))
    with pytest.raises(MalformedInput):
        Corridor(
            key="bad",
            name="Bad",
            geometry=geometry,
            simplified_geometry=geometry,
            cumulative_distances=(0.0, 200.0, 100.0),
            length_meters=100.0,
        )


def test_encode_polyline_matches_reference_example() -> None:
    points = [(-120.2, 38.5), (-120.95, 40.7), (-126.453, 43.252)]
    assert encode_polyline(points) == "_p~iF~ps|U_ulLnnqC_mqNvxq`@"


def test_document_keeps_the_stored_distance_table() -> None:
    corridor = build_corridor("north", "North", [(77.5, 13.0), (77.5, 13.01), (77.51, 13.02)])
    doc = corridor_to_document(corridor)
    doc["cumulativeDistances"] = [0.0, 1000.0, 2500.0]

    loaded = corridor_from_document(doc)

    assert doc["endpoints"]["start"]["coordinates"] == [77.5, 13.0]
    assert loaded.cumulative_distances == (0.0, 1000.0, 2500.0)
    assert loaded.length_meters == 2500.0
    assert loaded.encoded_polyline == corridor.encoded_polyline


def test_store_reads_corridors_lazily(tmp_path: Path) -> None:
    _write_route(tmp_path / "corridors", "north")
    store = CorridorStore(tmp_path / "corridors")

    assert store.keys() == []
    corridor = store.get("north")

    assert corridor.name == "North"
    assert store.keys() == ["north"]
    assert "north" in store
    assert "south" not in store


def test_store_unknown_key_raises_not_found(tmp_path: Path) -> None:
    store = CorridorStore(tmp_path / "missing")

    with pytest.raises(NotFound):
        store.get("nowhere")
    with pytest.raises(NotFound):
        store.get("../etc/passwd")


def test_load_all_swaps_the_mapping_and_invalidate_rereads(tmp_path: Path) -> None:
    corridors_dir = tmp_path / "corridors"
    _write_route(corridors_dir, "north")
    _write_route(corridors_dir, "south", [{"lat": 12.9, "lng": 77.6}, {"lat": 12.8, "lng": 77.6}])
    store = CorridorStore(corridors_dir)

    assert store.load_all() == 2
    assert store.keys() == ["north", "south"]
    first_read = store.get("north")

    _write_route(corridors_dir, "north", [{"lat": 13.0, "lng": 77.5}, {"lat": 13.5, "lng": 77.5}])
    assert store.get("north") is first_read

    store.invalidate("north")
    refreshed = store.get("north")
    assert refreshed.length_meters > first_read.length_meters

    (corridors_dir / "south.json").unlink()
    store.reload()
    with pytest.raises(NotFound):
        store.get("south")


def test_added_corridors_survive_reloads(tmp_path: Path) -> None:
    store = CorridorStore(tmp_path / "empty")
    store.add(build_corridor("manual", "Manual", [(77.5, 13.0), (77.6, 13.0)]))

    store.load_all()

    assert store.keys() == ["manual"]


def test_points_csv_is_grouped_and_ordered(tmp_path: Path) -> None:
    csv_path = tmp_path / "corridor_points.csv"
    csv_path.write_text(
        "\n".join(
            [
                "corridor_key,seq,lon,lat,name",
                "ring,2,77.52,13.00,Ring Road",
                "ring,1,77.50,13.00,Ring Road",
                "spur,1,77.60,12.90,",
                "spur,2,77.60,12.91,",
                "spur,3,bad,12.92,",
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    corridors = {c.key: c for c in load_corridor_points_csv(csv_path)}

    assert sorted(corridors) == ["ring", "spur"]
    assert corridors["ring"].name == "Ring Road"
    assert corridors["ring"].start == (77.50, 13.00)
    assert corridors["spur"].name == "spur"
    assert len(corridors["spur"].geometry) == 2


def test_points_csv_requires_columns(tmp_path: Path) -> None:
    csv_path = tmp_path / "broken.csv"
    csv_path.write_text("corridor_key,lon,lat\nx,77.5,13.0\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_corridor_points_csv(csv_path)


def test_simplify_line_drops_collinear_points_and_keeps_bends() -> None:
    points = [(77.5, 13.0), (77.5, 13.0001), (77.5, 13.01), (77.51, 13.02)]

    assert simplify_line(points, 0.0005) == [(77.5, 13.0), (77.5, 13.01), (77.51, 13.02)]
    assert simplify_line(points, 0.0) == points


def test_lazy_lookups_parse_the_points_csv_once(tmp_path: Path, monkeypatch) -> None:
    csv_path = tmp_path / "corridor_points.csv"
    csv_path.write_text(
        "corridor_key,seq,lon,lat,name\nring,1,77.50,13.00,Ring Road\nring,2,77.52,13.00,Ring Road\n",
        encoding="utf-8",
    )
    calls = {"n": 0}

    def counting_loader(path, **kwargs):  # type: ignore[no-untyped-def]
        calls["n"] += 1
        return load_corridor_points_csv(path, **kwargs)

    monkeypatch.setattr("corridortrack.tracking.corridors.load_corridor_points_csv", counting_loader)
    store = CorridorStore(tmp_path / "missing", csv_path)

    for key in ("typo", "typo", "other"):
        with pytest.raises(NotFound):
            store.get(key)
    assert store.get("ring").name == "Ring Road"
    assert calls["n"] == 1

    store.invalidate()
    with pytest.raises(NotFound):
        store.get("typo")
    assert calls["n"] == 2
