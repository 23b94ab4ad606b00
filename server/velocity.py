"""Geo math and speed statistics used by segmentation and trip classification.

Everything here is a pure function over points or speed lists. Points are
anything with ``timestamp``, ``latitude`` and ``longitude`` attributes.
Speeds are always km/h.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

SUSPICIOUS_SPEED_KMH = 170.0  # faster than this between two fixes is a GPS glitch

_EARTH_RADIUS_M = 6_371_000


# ---------------------------------------------------------------------------
# Distance
# ---------------------------------------------------------------------------

def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return _EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def point_distance_m(a, b) -> float:
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def path_distance_m(points: Sequence) -> float:
    """Sum of leg distances along an ordered path."""
    return sum(point_distance_m(points[i - 1], points[i]) for i in range(1, len(points)))


def centroid(points: Sequence) -> tuple[float, float]:
    if not points:
        raise ValueError("centroid of an empty point list")
    n = len(points)
    return (
        sum(p.latitude for p in points) / n,
        sum(p.longitude for p in points) / n,
    )


# ---------------------------------------------------------------------------
# Speed
# ---------------------------------------------------------------------------

def instant_speed_kmh(a, b) -> float:
    """Speed between two fixes. Zero when either timestamp is missing or time does not advance."""
    if a is None or b is None or a.timestamp is None or b.timestamp is None:
        return 0.0
    seconds = (b.timestamp - a.timestamp).total_seconds()
    if seconds <= 0:
        return 0.0
    return point_distance_m(a, b) / seconds * 3.6


def is_suspicious_speed(speed_kmh: float, ceiling_kmh: float = SUSPICIOUS_SPEED_KMH) -> bool:
    return speed_kmh > ceiling_kmh


def moving_average(values: Optional[Sequence[Optional[float]]], window: int) -> list[float]:
    """Centered moving average.

    The window shrinks near the ends of the sequence instead of padding, so the
    output always has the same length as the input. ``None`` entries are
    skipped inside a window. A window of zero or less returns a copy.
    """
    if not values:
        return []
    if window <= 0:
        return list(values)

    n = len(values)
    before = window // 2
    after = window - before
    smoothed = []
    for i in range(n):
        chunk = [v for v in values[max(0, i - before):min(n, i + after)] if v is not None]
        smoothed.append(sum(chunk) / len(chunk) if chunk else 0.0)
    return smoothed


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def percentile(values: Sequence[float], pct: float) -> float:
    """Linear-interpolated percentile, *pct* in [0, 100]. Zero for an empty input."""
    if not values:
        return 0.0
    if not 0 <= pct <= 100:
        raise ValueError(f"percentile must be within [0, 100], got {pct}")
    ordered = sorted(values)
    rank = (len(ordered) - 1) * pct / 100.0
    lo = math.floor(rank)
    hi = math.ceil(rank)
    if lo == hi:
        return ordered[lo]
    return ordered[lo] + (ordered[hi] - ordered[lo]) * (rank - lo)


def median(values: Sequence[float]) -> float:
    return percentile(values, 50)


@dataclass(frozen=True, slots=True)
class SpeedStatistics:
    avg_kmh: float
    peak_kmh: float
    max_kmh: float
    median_kmh: float
    samples: int


def leg_speeds(path: Sequence, ceiling_kmh: float = SUSPICIOUS_SPEED_KMH) -> list[float]:
    """Instantaneous speeds between consecutive fixes, with suspicious legs dropped."""
    speeds = []
    for i in range(1, len(path)):
        speed = instant_speed_kmh(path[i - 1], path[i])
        if not is_suspicious_speed(speed, ceiling_kmh):
            speeds.append(speed)
    return speeds


def reported_speeds(path: Sequence, ceiling_kmh: float = SUSPICIOUS_SPEED_KMH) -> list[float]:
    return [
        p.speed for p in path
        if p.speed is not None and p.speed >= 0 and not is_suspicious_speed(p.speed, ceiling_kmh)
    ]


def speed_statistics(
    path: Sequence,
    ceiling_kmh: float = SUSPICIOUS_SPEED_KMH,
    window: int = 3,
) -> SpeedStatistics:
    """Summarise the speed profile of a path.

    Device-reported speeds are preferred when at least half of the fixes carry
    one. Otherwise the average is distance over elapsed time and the peak comes
    from smoothed instantaneous speeds. The peak is the 95th percentile so a
    single spike cannot turn a walk into a drive.
    """
    if len(path) < 2:
        return SpeedStatistics(0.0, 0.0, 0.0, 0.0, 0)

    reported = reported_speeds(path, ceiling_kmh)
    if len(reported) * 2 >= len(path):
        return SpeedStatistics(
            avg_kmh=mean(reported),
            peak_kmh=percentile(reported, 95),
            max_kmh=max(reported),
            median_kmh=median(reported),
            samples=len(reported),
        )

    seconds = (path[-1].timestamp - path[0].timestamp).total_seconds()
    avg = path_distance_m(path) / seconds * 3.6 if seconds > 0 else 0.0
    smoothed = moving_average(leg_speeds(path, ceiling_kmh), window)
    if not smoothed:
        # every leg was a glitch; straight-line speed is all that is left
        return SpeedStatistics(avg, avg, avg, avg, 0)
    return SpeedStatistics(
        avg_kmh=avg,
        peak_kmh=percentile(smoothed, 95),
        max_kmh=max(smoothed),
        median_kmh=median(smoothed),
        samples=len(smoothed),
    )
