from __future__ import annotations

import _bootstrap  # noqa: F401

import argparse
import asyncio
import logging

from corridortrack.client.reconcile import CorridorReconciler
from corridortrack.logging_config import configure_logging
from corridortrack.settings import get_config

logger = logging.getLogger("watch_corridor")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Follow the vehicles on a corridor (push stream with polling fallback)."
    )
    parser.add_argument("corridor_key", help="Corridor key to watch.")
    parser.add_argument("--direction", choices=["forward", "reverse"], default=None)
    parser.add_argument("--base-url", default=None, help="API base URL (default: config client.base_url).")
    parser.add_argument("--no-push", action="store_true", help="Poll only; do not open the push stream.")
    parser.add_argument(
        "--report-seconds",
        type=float,
        default=5.0,
        help="How often to log the current view (default: 5).",
    )
    return parser.parse_args()


async def _report(reconciler: CorridorReconciler, every: float) -> None:
    while True:
        await asyncio.sleep(every)
        trips = reconciler.view.trips()
        logger.info(
            "%s trip(s) on %s (push=%s, poll every %.0fs)",
            len(trips),
            reconciler.corridor_key,
            "up" if reconciler.push_connected else "down",
            reconciler.poll_interval,
        )
        for trip in trips:
            progress = trip.get("progress") or {}
            logger.info(
                "  %s vehicle=%s %.1f%% eta=%s",
                trip.get("tripId"),
                trip.get("vehicleRef"),
                float(progress.get("percent") or 0.0),
                trip.get("eta"),
            )


async def _run(args: argparse.Namespace) -> None:
    config = get_config()
    client_config = config.client
    if args.base_url:
        client_config = client_config.model_copy(update={"base_url": args.base_url})

    reconciler = CorridorReconciler(args.corridor_key, direction=args.direction, config=client_config)
    reporter = asyncio.create_task(_report(reconciler, args.report_seconds))
    try:
        await reconciler.run(push=not args.no_push)
    finally:
        reporter.cancel()
        await reconciler.aclose()


def main() -> None:
    args = parse_args()
    configure_logging()
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Stopped.")


if __name__ == "__main__":
    main()
