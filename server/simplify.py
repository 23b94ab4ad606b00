"""Douglas-Peucker simplification of trip paths.

Only the stored path is simplified; trip distance and speed statistics are
computed from the full path before this runs.
"""

import dataclasses
import logging
import math
from typing import Sequence

from events import GPSPoint, TimelineEvent, Trip
from timeline_config import TimelineConfig
from velocity import haversine_m

logger = logging.getLogger(__name__)

_MAX_TOLERANCE_FACTOR = 10


def _cross_track_m(point: GPSPoint, start: GPSPoint, end: GPSPoint) -> float:
    """Distance in metres from *point* to the segment start-end, on a local flat projection."""
    lat0 = math.radians(start.latitude)
    m_per_deg_lat = 111_320.0
    m_per_deg_lon = 111_320.0 * math.cos(lat0)

    ex = (end.longitude - start.longitude) * m_per_deg_lon
    ey = (end.latitude - start.latitude) * m_per_deg_lat
    px = (point.longitude - start.longitude) * m_per_deg_lon
    py = (point.latitude - start.latitude) * m_per_deg_lat

    seg_len_sq = ex * ex + ey * ey
    if seg_len_sq == 0:
        return haversine_m(start.latitude, start.longitude, point.latitude, point.longitude)
    t = max(0.0, min(1.0, (px * ex + py * ey) / seg_len_sq))
    return math.hypot(px - t * ex, py - t * ey)


def simplify_path(points: Sequence[GPSPoint], tolerance_m: float) -> list[GPSPoint]:
    """Drop fixes closer than *tolerance_m* to the line through their neighbours.

    The first and last fixes are always kept. Iterative, so long paths do
    not hit the recursion limit.
    """
    n = len(points)
    if n <= 2 or tolerance_m <= 0:
        return list(points)

    keep = [False] * n
    keep[0] = keep[-1] = True
    stack = [(0, n - 1)]
    while stack:
        first, last = stack.pop()
        max_dist = 0.0
        index = -1
        for i in range(first + 1, last):
            d = _cross_track_m(points[i], points[first], points[last])
            if d > max_dist:
                max_dist = d
                index = i
        if index != -1 and max_dist > tolerance_m:
            keep[index] = True
            stack.append((first, index))
            stack.append((index, last))
    return [p for p, k in zip(points, keep) if k]


def adaptive_tolerance(distance_m: float, base_tolerance: float) -> float:
    """Tighter tolerance for short trips, looser for long ones."""
    km = distance_m / 1000.0
    if km < 1.0:
        return base_tolerance * 0.5
    if km < 5.0:
        return base_tolerance
    if km < 20.0:
        return base_tolerance * 1.5
    return base_tolerance * 2.0


def _downsample(points: list[GPSPoint], max_points: int) -> list[GPSPoint]:
    step = (len(points) - 1) / (max_points - 1)
    return [points[round(i * step)] for i in range(max_points)]


def simplify_trip_path(trip: Trip, config: TimelineConfig) -> tuple[GPSPoint, ...]:
    points = list(trip.path)
    tolerance = config.path_simplification_tolerance
    if config.path_adaptive_simplification:
        tolerance = adaptive_tolerance(trip.distance_meters, tolerance)

    simplified = simplify_path(points, tolerance)
    max_points = config.path_max_points
    if max_points:
        current = tolerance
        while len(simplified) > max_points and current < tolerance * _MAX_TOLERANCE_FACTOR:
            current *= 1.5
            simplified = simplify_path(points, current)
        if len(simplified) > max_points:
            simplified = _downsample(simplified, max_points)
    return tuple(simplified)


def simplify_paths(events: list[TimelineEvent], config: TimelineConfig) -> list[TimelineEvent]:
    if not config.path_simplification_enabled:
        return events
    result = []
    for event in events:
        if isinstance(event, Trip) and len(event.path) > 2:
            path = simplify_trip_path(event, config)
            if len(path) != len(event.path):
                logger.debug("Simplified trip %s path %d -> %d points", event.start, len(event.path), len(path))
                event = dataclasses.replace(event, path=path)
        result.append(event)
    return result
