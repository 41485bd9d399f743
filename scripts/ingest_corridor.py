from __future__ import annotations

import _bootstrap  # noqa: F401

import argparse
import json
import logging
import sys
from pathlib import Path

from corridortrack.logging_config import configure_logging
from corridortrack.settings import get_config
from corridortrack.tracking.corridors import build_corridor, corridor_to_document
from corridortrack.tracking.errors import MalformedInput

logger = logging.getLogger("ingest_corridor")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build a corridor document (distances, simplified line, polyline) from a route JSON."
    )
    parser.add_argument("route_json", help="Input file: { route: [ { lat, lng }, ... ] } (e.g. an OSRM export).")
    parser.add_argument("--key", required=True, help="Corridor key, e.g. bengaluru-tumkur.")
    parser.add_argument("--name", default=None, help="Display name (default: the key).")
    parser.add_argument(
        "--tolerance",
        type=float,
        default=None,
        help="Simplification tolerance in degrees (default: config corridors.simplify_tolerance_deg).",
    )
    parser.add_argument(
        "--output-dir",
        default=None,
        help="Where to write <key>.json (default: config paths.corridors_dir).",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    configure_logging()
    config = get_config()

    source = Path(args.route_json)
    if not source.exists():
        logger.error("File not found: %s", source)
        return 1

    raw = json.loads(source.read_text(encoding="utf-8"))
    route = raw.get("route") if isinstance(raw, dict) else None
    if not isinstance(route, list) or len(route) < 2:
        logger.error("Invalid JSON format: expected { route: [ { lat, lng }, ... ] } with at least 2 points.")
        return 1

    tolerance = args.tolerance if args.tolerance is not None else config.corridors.simplify_tolerance_deg
    try:
        points = [(float(p["lng"]), float(p["lat"])) for p in route]
        corridor = build_corridor(args.key, args.name or args.key, points, simplify_tolerance_deg=tolerance)
    except (KeyError, TypeError, ValueError, MalformedInput) as exc:
        logger.error("Ingestion failed: %s", exc)
        return 1

    output_dir = Path(args.output_dir) if args.output_dir else config.paths.corridors_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    out_path = output_dir / f"{corridor.key}.json"
    tmp = out_path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(corridor_to_document(corridor), indent=2) + "\n", encoding="utf-8")
    tmp.replace(out_path)

    logger.info(
        "Corridor stored: %s lengthMeters=%.0f points=%s simplified=%s -> %s",
        corridor.key,
        corridor.length_meters,
        len(corridor.geometry),
        len(corridor.simplified_geometry),
        out_path,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
