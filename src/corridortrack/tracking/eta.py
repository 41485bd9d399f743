from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from corridortrack.settings import EtaSection
from corridortrack.utils.time import utc_now


@dataclass(frozen=True)
class EtaSpec:
    # Average corridor speed used when the reported speed is missing or not trustworthy.
    default_speed_kmph: float = 45.0
    # Readings at or below this are treated as stopped/GPS noise rather than a real crawl.
    min_confident_speed_kmph: float = 5.0


@dataclass(frozen=True)
class EtaEstimate:
    eta_seconds: int
    arrival_time: datetime
    speed_kmph: float
    used_default_speed: bool


def eta_spec_from_config(section: EtaSection) -> EtaSpec:
    return EtaSpec(
        default_speed_kmph=float(section.default_speed_kmph),
        min_confident_speed_kmph=float(section.min_confident_speed_kmph),
    )


def effective_speed_kmph(reported_speed_kmph: Optional[float], spec: EtaSpec) -> tuple[float, bool]:
    if reported_speed_kmph is not None and reported_speed_kmph > spec.min_confident_speed_kmph:
        return float(reported_speed_kmph), False
    return float(spec.default_speed_kmph), True


def estimate(
    meters_remaining: float,
    length_meters: float,
    reported_speed_kmph: Optional[float],
    *,
    spec: EtaSpec = EtaSpec(),
    now: Optional[datetime] = None,
) -> Optional[EtaEstimate]:
    """Estimate arrival from the remaining distance and the current (or default) speed.

    Returns None only when no positive speed is available at all.
    """

    speed_kmph, used_default = effective_speed_kmph(reported_speed_kmph, spec)
    if speed_kmph <= 0:
        return None

    remaining = min(max(float(meters_remaining), 0.0), max(float(length_meters), 0.0))
    speed_mps = speed_kmph * 1000.0 / 3600.0
    eta_seconds = int(round(remaining / speed_mps)) if remaining > 0 else 0

    started = now or utc_now()
    return EtaEstimate(
        eta_seconds=eta_seconds,
        arrival_time=started + timedelta(seconds=eta_seconds),
        speed_kmph=speed_kmph,
        used_default_speed=used_default,
    )
