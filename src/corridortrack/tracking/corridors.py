"""Corridor geometry: the immutable polyline every trip is projected against.

Corridors are produced out of band (see `scripts/ingest_corridor.py`) as JSON documents, one per
key, or as a long-format points CSV. `CorridorStore` owns the loaded set for the lifetime of the
process: readers always see a complete `Corridor`, and a reload swaps the whole mapping at once.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import pandas as pd

from corridortrack.settings import AppConfig
from corridortrack.tracking.errors import MalformedInput, NotFound
from corridortrack.utils.geo import (
    LonLat,
    cumulative_distances_m,
    drop_consecutive_duplicates,
    encode_polyline,
    is_valid_lonlat,
    simplify_line,
)

logger = logging.getLogger(__name__)

REQUIRED_POINT_COLUMNS = {"corridor_key", "seq", "lon", "lat"}
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True)
class Corridor:
    key: str
    name: str
    geometry: tuple[LonLat, ...]
    simplified_geometry: tuple[LonLat, ...]
    cumulative_distances: tuple[float, ...]
    length_meters: float
    encoded_polyline: str = ""

    def __post_init__(self) -> None:
        if len(self.geometry) < 2:
            raise MalformedInput(f"Corridor {self.key!r} needs at least 2 points.")
        if len(self.cumulative_distances) != len(self.geometry):
            raise MalformedInput(
                f"Corridor {self.key!r}: cumulative_distances has {len(self.cumulative_distances)} "
                f"entries for {len(self.geometry)} points."
            )
        if self.cumulative_distances[0] != 0:
            raise MalformedInput(f"Corridor {self.key!r}: cumulative_distances must start at 0.")
        for i in range(1, len(self.geometry)):
            if self.cumulative_distances[i] < self.cumulative_distances[i - 1]:
                raise MalformedInput(f"Corridor {self.key!r}: cumulative_distances decreases at index {i}.")
            if self.geometry[i] == self.geometry[i - 1]:
                raise MalformedInput(f"Corridor {self.key!r}: zero-length segment at index {i - 1}.")

    @property
    def start(self) -> LonLat:
        return self.geometry[0]

    @property
    def end(self) -> LonLat:
        return self.geometry[-1]


def _coerce_points(raw: Iterable[Any]) -> list[LonLat]:
    points: list[LonLat] = []
    for item in raw:
        if isinstance(item, dict):
            lon = item.get("lng", item.get("lon"))
            lat = item.get("lat")
        else:
            try:
                lon, lat = item[0], item[1]
            except (TypeError, IndexError, KeyError) as exc:
                raise MalformedInput(f"Invalid corridor point: {item!r}") from exc
        if not is_valid_lonlat(lon, lat):
            raise MalformedInput(f"Invalid corridor point: {item!r}")
        points.append((float(lon), float(lat)))
    return points


def build_corridor(
    key: str,
    name: str,
    points: Sequence[LonLat],
    *,
    simplify_tolerance_deg: float = 0.0005,
) -> Corridor:
    """Build a corridor from raw (lon, lat) points: distances, length, display line, polyline."""

    geometry = drop_consecutive_duplicates(points)
    if len(geometry) < 2:
        raise MalformedInput(f"Corridor {key!r} needs at least 2 distinct points.")
    cumulative = cumulative_distances_m(geometry)
    simplified = simplify_line(geometry, simplify_tolerance_deg)
    return Corridor(
        key=key,
        name=name or key,
        geometry=tuple(geometry),
        simplified_geometry=tuple(simplified),
        cumulative_distances=tuple(cumulative),
        length_meters=cumulative[-1],
        encoded_polyline=encode_polyline(simplified),
    )


def corridor_to_document(corridor: Corridor) -> dict[str, Any]:
    return {
        "key": corridor.key,
        "name": corridor.name,
        "fullLine": {"type": "LineString", "coordinates": [list(p) for p in corridor.geometry]},
        "simplifiedLine": {
            "type": "LineString",
            "coordinates": [list(p) for p in corridor.simplified_geometry],
        },
        "encodedPolyline": corridor.encoded_polyline,
        "cumulativeDistances": list(corridor.cumulative_distances),
        "lengthMeters": corridor.length_meters,
        "endpoints": {
            "start": {"type": "Point", "coordinates": list(corridor.start)},
            "end": {"type": "Point", "coordinates": list(corridor.end)},
        },
        "meta": {
            "simplifiedPointCount": len(corridor.simplified_geometry),
            "sourcePoints": len(corridor.geometry),
        },
    }


def corridor_from_document(
    doc: dict[str, Any],
    *,
    default_key: Optional[str] = None,
    simplify_tolerance_deg: float = 0.0005,
) -> Corridor:
    """Parse a stored corridor document, or build one from a raw `{route: [{lat, lng}]}` file."""

    key = str(doc.get("key") or default_key or "")
    if not key:
        raise MalformedInput("Corridor document has no key.")
    name = str(doc.get("name") or key)

    if "route" in doc:
        return build_corridor(
            key, name, _coerce_points(doc["route"]), simplify_tolerance_deg=simplify_tolerance_deg
        )

    full_line = doc.get("fullLine") or {}
    geometry = _coerce_points(full_line.get("coordinates") or [])
    cumulative_raw = doc.get("cumulativeDistances")
    if not cumulative_raw:
        return build_corridor(key, name, geometry, simplify_tolerance_deg=simplify_tolerance_deg)

    cumulative = tuple(float(v) for v in cumulative_raw)
    simplified_raw = (doc.get("simplifiedLine") or {}).get("coordinates")
    simplified = _coerce_points(simplified_raw) if simplified_raw else simplify_line(
        geometry, simplify_tolerance_deg
    )
    declared_length = doc.get("lengthMeters")
    if declared_length is not None and abs(float(declared_length) - cumulative[-1]) > 1.0:
        logger.warning(
            "Corridor %s declares lengthMeters=%s but cumulative table ends at %.1f; using the table.",
            key,
            declared_length,
            cumulative[-1],
        )
    return Corridor(
        key=key,
        name=name,
        geometry=tuple(geometry),
        simplified_geometry=tuple(simplified),
        cumulative_distances=cumulative,
        length_meters=cumulative[-1],
        encoded_polyline=str(doc.get("encodedPolyline") or encode_polyline(simplified)),
    )


def load_corridor_points_csv(path: Path, *, simplify_tolerance_deg: float = 0.0005) -> list[Corridor]:
    """Load corridors from a long-format CSV: one row per point (`corridor_key, seq, lon, lat`)."""

    df = pd.read_csv(path)
    missing = sorted(REQUIRED_POINT_COLUMNS - set(df.columns))
    if missing:
        raise ValueError(f"Corridor points CSV is missing required columns: {missing}")

    df = df.copy()
    df["corridor_key"] = df["corridor_key"].astype(str)
    if "name" not in df.columns:
        df["name"] = pd.NA
    for column in ("seq", "lon", "lat"):
        df[column] = pd.to_numeric(df[column], errors="coerce")
    df = df.dropna(subset=["seq", "lon", "lat"]).sort_values(["corridor_key", "seq"])

    corridors: list[Corridor] = []
    for key, group in df.groupby("corridor_key", sort=True):
        names = group["name"].dropna().astype(str)
        name = names.iloc[0] if not names.empty else str(key)
        points = list(zip(group["lon"].astype(float), group["lat"].astype(float)))
        corridors.append(
            build_corridor(str(key), name, points, simplify_tolerance_deg=simplify_tolerance_deg)
        )
    return corridors


class CorridorStore:
    """Read-mostly registry of corridors keyed by corridor key.

    The mapping is replaced wholesale on every write, so lock-free readers never observe a
    half-built state.
    """

    def __init__(
        self,
        corridors_dir: Optional[Path] = None,
        corridors_csv: Optional[Path] = None,
        *,
        simplify_tolerance_deg: float = 0.0005,
        corridors: Iterable[Corridor] = (),
    ) -> None:
        self.corridors_dir = corridors_dir
        self.corridors_csv = corridors_csv
        self.simplify_tolerance_deg = simplify_tolerance_deg
        self._write_lock = threading.Lock()
        self._pinned: dict[str, Corridor] = {c.key: c for c in corridors}
        self._corridors: dict[str, Corridor] = dict(self._pinned)
        self._fully_loaded = False
        # Parsed points CSV, kept until the next reload or invalidate.
        self._csv_corridors: Optional[dict[str, Corridor]] = None

    @classmethod
    def from_config(cls, config: AppConfig) -> "CorridorStore":
        return cls(
            corridors_dir=config.paths.corridors_dir,
            corridors_csv=config.paths.corridors_csv,
            simplify_tolerance_deg=config.corridors.simplify_tolerance_deg,
        )

    def _json_path(self, key: str) -> Optional[Path]:
        if self.corridors_dir is None:
            return None
        return self.corridors_dir / f"{key}.json"

    def _read_json(self, path: Path) -> Corridor:
        doc = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(doc, dict):
            raise MalformedInput(f"Corridor document {path} is not a JSON object.")
        return corridor_from_document(
            doc, default_key=path.stem, simplify_tolerance_deg=self.simplify_tolerance_deg
        )

    def _read_csv(self) -> dict[str, Corridor]:
        cached = self._csv_corridors
        if cached is not None:
            return cached
        corridors: dict[str, Corridor] = {}
        if self.corridors_csv is not None and self.corridors_csv.exists():
            corridors = {
                c.key: c
                for c in load_corridor_points_csv(
                    self.corridors_csv, simplify_tolerance_deg=self.simplify_tolerance_deg
                )
            }
        self._csv_corridors = corridors
        return corridors

    def _read_all(self) -> dict[str, Corridor]:
        mapping: dict[str, Corridor] = dict(self._read_csv())
        if self.corridors_dir is not None and self.corridors_dir.exists():
            for path in sorted(self.corridors_dir.glob("*.json")):
                corridor = self._read_json(path)
                mapping[corridor.key] = corridor
        return mapping

    def _read_one(self, key: str) -> Optional[Corridor]:
        path = self._json_path(key)
        if path is not None and path.exists():
            return self._read_json(path)
        return self._read_csv().get(key)

    def load_all(self) -> int:
        """Load every corridor from disk and replace the current mapping."""

        self._csv_corridors = None
        mapping = self._read_all()
        with self._write_lock:
            merged = dict(self._pinned)
            merged.update(mapping)
            self._corridors = merged
            self._fully_loaded = True
        logger.info("Loaded %s corridor(s).", len(mapping))
        return len(mapping)

    def reload(self) -> int:
        return self.load_all()

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop cached corridors read from disk; the next access reads them again."""

        self._csv_corridors = None
        with self._write_lock:
            if key is None:
                self._corridors = dict(self._pinned)
            else:
                self._corridors = {
                    k: v for k, v in self._corridors.items() if k != key or k in self._pinned
                }
            self._fully_loaded = False

    def add(self, corridor: Corridor) -> None:
        """Register a corridor that has no on-disk source (survives reloads)."""

        with self._write_lock:
            self._pinned = {**self._pinned, corridor.key: corridor}
            self._corridors = {**self._corridors, corridor.key: corridor}

    def _cache(self, corridor: Corridor) -> None:
        with self._write_lock:
            self._corridors = {**self._corridors, corridor.key: corridor}

    def get(self, key: str) -> Corridor:
        corridor = self._corridors.get(key)
        if corridor is not None:
            return corridor
        if self._fully_loaded or not _KEY_PATTERN.match(key or ""):
            raise NotFound(f"Corridor not found: {key}")

        corridor = self._read_one(key)
        if corridor is None:
            raise NotFound(f"Corridor not found: {key}")
        self._cache(corridor)
        logger.info("Loaded corridor %s on first access (%.0f m).", key, corridor.length_meters)
        return corridor

    def keys(self) -> list[str]:
        return sorted(self._corridors)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        try:
            self.get(key)
        except NotFound:
            return False
        return True
