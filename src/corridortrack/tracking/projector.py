"""Nearest-point-on-polyline projection of a GPS fix onto a corridor.

Each segment is evaluated on a local equirectangular plane centred on the fix, which is an
accurate great-circle approximation at the scale of a single segment. The scan is exhaustive and
vectorised; corridors carry at most a few hundred points.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Union

import numpy as np

from corridortrack.tracking.corridors import Corridor
from corridortrack.tracking.errors import MalformedInput
from corridortrack.utils.geo import EARTH_RADIUS_M, LonLat, is_valid_lonlat


class Direction(str, Enum):
    FORWARD = "forward"
    REVERSE = "reverse"


@dataclass(frozen=True)
class Progress:
    # Journey-relative distance: counted from the corridor end when travelling in reverse.
    meters: float
    percent: float
    segment_index: int
    # Perpendicular distance of the fix from the corridor line.
    offset_meters: float

    def as_dict(self) -> dict[str, float]:
        return {"meters": round(self.meters, 1), "percent": round(self.percent, 2)}


def parse_direction(value: Union[str, Direction, None]) -> Direction:
    if isinstance(value, Direction):
        return value
    try:
        return Direction(str(value))
    except ValueError as exc:
        raise MalformedInput(f"Invalid direction: {value!r} (expected 'forward' or 'reverse').") from exc


def _segment_arrays(corridor: Corridor) -> tuple[np.ndarray, np.ndarray]:
    coords = np.asarray(corridor.geometry, dtype=float)
    cumulative = np.asarray(corridor.cumulative_distances, dtype=float)
    return coords, cumulative


def project(
    point: LonLat,
    corridor: Corridor,
    direction: Union[str, Direction] = Direction.FORWARD,
) -> Progress:
    """Project `point` onto `corridor` and return direction-aware progress."""

    lon, lat = point
    if not is_valid_lonlat(lon, lat):
        raise MalformedInput(f"Invalid coordinates: lon={lon!r}, lat={lat!r}")
    direction = parse_direction(direction)

    coords, cumulative = _segment_arrays(corridor)

    # Local plane in metres around the fix.
    lat0 = math.radians(lat)
    x = np.radians(coords[:, 0] - lon) * math.cos(lat0) * EARTH_RADIUS_M
    y = np.radians(coords[:, 1] - lat) * EARTH_RADIUS_M

    ax, ay = x[:-1], y[:-1]
    dx, dy = x[1:] - ax, y[1:] - ay
    seg_len_sq = dx * dx + dy * dy

    # The fix sits at the origin, so the closest point parameter is -a.d / |d|^2.
    with np.errstate(invalid="ignore", divide="ignore"):
        t = np.where(seg_len_sq > 0, -(ax * dx + ay * dy) / seg_len_sq, 0.0)
    t = np.clip(t, 0.0, 1.0)
    dist = np.hypot(ax + t * dx, ay + t * dy)

    index = int(np.argmin(dist))
    seg_meters = cumulative[index + 1] - cumulative[index]
    meters = float(cumulative[index] + t[index] * seg_meters)

    length = float(corridor.length_meters)
    meters = min(max(meters, 0.0), length)
    if direction is Direction.REVERSE:
        meters = length - meters
    percent = (meters / length * 100.0) if length > 0 else 0.0

    return Progress(
        meters=meters,
        percent=percent,
        segment_index=index,
        offset_meters=float(dist[index]),
    )
