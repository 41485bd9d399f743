"""Small spherical-geometry helpers for corridor building and projection.

All coordinates are (lon, lat) pairs in degrees, matching GeoJSON order.
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence

import polyline
from shapely.geometry import LineString

EARTH_RADIUS_M = 6371008.8

LonLat = tuple[float, float]


def haversine_m(a_lon: float, a_lat: float, b_lon: float, b_lat: float) -> float:
    phi1 = math.radians(a_lat)
    phi2 = math.radians(b_lat)
    dphi = math.radians(b_lat - a_lat)
    dlmb = math.radians(b_lon - a_lon)

    s = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(s))


def cumulative_distances_m(points: Sequence[LonLat]) -> list[float]:
    cumulative = [0.0]
    for i in range(1, len(points)):
        a_lon, a_lat = points[i - 1]
        b_lon, b_lat = points[i]
        cumulative.append(cumulative[-1] + haversine_m(a_lon, a_lat, b_lon, b_lat))
    return cumulative


def is_valid_lonlat(lon: object, lat: object) -> bool:
    if isinstance(lon, bool) or isinstance(lat, bool):
        return False
    if not isinstance(lon, (int, float)) or not isinstance(lat, (int, float)):
        return False
    if not (math.isfinite(lon) and math.isfinite(lat)):
        return False
    return -180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0


def drop_consecutive_duplicates(points: Iterable[LonLat]) -> list[LonLat]:
    out: list[LonLat] = []
    for lon, lat in points:
        point = (float(lon), float(lat))
        if out and out[-1] == point:
            continue
        out.append(point)
    return out


def simplify_line(points: Sequence[LonLat], tolerance_deg: float) -> list[LonLat]:
    """Douglas-Peucker simplification in planar degree space (display only)."""

    if len(points) <= 2 or tolerance_deg <= 0:
        return list(points)
    simplified = LineString(points).simplify(tolerance_deg, preserve_topology=False)
    return [(float(lon), float(lat)) for lon, lat in simplified.coords]


def encode_polyline(points: Sequence[LonLat], precision: int = 5) -> str:
    """Google encoded polyline of (lon, lat) points; the wire format is lat/lng order."""

    return polyline.encode([(lat, lon) for lon, lat in points], precision)
