"""Trip classification and timeline refinement.

Two strategies turn the raw detector output into the final timeline. Both
share the contract ``apply(user_id, events, config) -> events``:

- ``single``: every raw trip is one trip, classified from its overall
  average and peak speed.
- ``multiple``: a raw trip is split where it contains a long enough stop,
  the pieces are classified, and neighbouring trips of the same mode are
  merged back together when only a short, drift-scale stop separates them.

Whatever the strategy, a DataGap is never merged away: merges only ever look
at directly adjacent events, and a gap sitting between two trips or stays is
adjacent to both.
"""

import dataclasses
import logging
from typing import Callable, Optional

from events import DataGap, GPSPoint, Stay, TimelineEvent, TravelType, Trip, assert_contiguous
from simplify import simplify_paths
from timeline_config import TimelineConfig
from velocity import (
    centroid,
    haversine_m,
    instant_speed_kmh,
    path_distance_m,
    point_distance_m,
    speed_statistics,
)

logger = logging.getLogger(__name__)

# A WALK/CAR pair stays split only if each mode covers at least this share of the distance
MIN_MODE_CONTRIBUTION_RATIO = 0.20


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify(avg_kmh: float, peak_kmh: float, distance_m: float, config: TimelineConfig) -> TravelType:
    """Travel mode from average and peak speed.

    Short trips get 1 km/h of slack on the walking average, since stopping
    at both ends drags a short walk's average around.
    """
    short_trip = distance_m / 1000.0 <= config.short_distance_km
    peak_walking = peak_kmh <= config.walking_max_max_speed
    if avg_kmh <= config.walking_max_avg_speed and peak_walking:
        return TravelType.WALK
    if short_trip and avg_kmh <= config.walking_max_avg_speed + 1.0 and peak_walking:
        return TravelType.WALK
    if avg_kmh >= config.car_min_avg_speed or peak_kmh >= config.car_min_max_speed:
        return TravelType.CAR
    return TravelType.UNKNOWN


def classify_trip(trip: Trip, config: TimelineConfig) -> Trip:
    if len(trip.path) >= 2:
        stats = speed_statistics(trip.path, config.suspicious_speed_kmh, config.moving_average_window)
        avg, peak = stats.avg_kmh, stats.peak_kmh
    else:
        # Nothing to sample, fall back to straight-line speed
        seconds = trip.duration_seconds
        avg = peak = trip.distance_meters / seconds * 3.6 if seconds > 0 else 0.0

    travel_type = classify(avg, peak, trip.distance_meters, config)
    return dataclasses.replace(trip, travel_type=travel_type, avg_speed_kmh=avg, max_speed_kmh=peak)


# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------

def _join_paths(first: tuple[GPSPoint, ...], second: tuple[GPSPoint, ...]) -> tuple[GPSPoint, ...]:
    if first and second and first[-1] == second[0]:
        return first + second[1:]
    return first + second


def merge_trips(first: Trip, second: Trip) -> Trip:
    """One unclassified trip covering *first* through *second*."""
    path = _join_paths(first.path, second.path)
    return Trip(
        start=first.start,
        end=second.end,
        distance_meters=path_distance_m(path),
        path=path,
    )


def merge_stays(first: Stay, second: Stay) -> Stay:
    """Combine two stays, weighting each centroid by its duration."""
    w1 = max(first.duration_seconds, 0.0)
    w2 = max(second.duration_seconds, 0.0)
    if w1 + w2 == 0:
        w1 = w2 = 1.0
    total = w1 + w2
    return Stay(
        start=first.start,
        end=second.end,
        latitude=(first.latitude * w1 + second.latitude * w2) / total,
        longitude=(first.longitude * w1 + second.longitude * w2) / total,
        place_id=first.place_id if first.place_id is not None else second.place_id,
        location_name=first.location_name or second.location_name,
    )


def _stay_distance_m(a: Stay, b: Stay) -> float:
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def _is_short_trip(trip: Trip, config: TimelineConfig) -> bool:
    return (
        trip.distance_meters < config.trip_min_distance_meters
        or trip.duration_seconds < config.trip_min_duration_seconds
    )


def _should_keep_modes_apart(first: Trip, second: Trip) -> bool:
    if first.travel_type is second.travel_type:
        return False
    modes = {first.travel_type, second.travel_type}
    if modes != {TravelType.WALK, TravelType.CAR}:
        return True
    total = first.distance_meters + second.distance_meters
    if total <= 0:
        return False
    return min(first.distance_meters, second.distance_meters) / total >= MIN_MODE_CONTRIBUTION_RATIO


# ---------------------------------------------------------------------------
# Passes shared by both strategies
# ---------------------------------------------------------------------------

def merge_adjacent_trips(events: list[TimelineEvent], config: TimelineConfig, by_mode: bool = False) -> list[TimelineEvent]:
    """Collapse runs of directly adjacent trips.

    With *by_mode*, a WALK/CAR pair where both modes carry real distance is
    kept apart. A gap or stay between two trips always stops the run.
    """
    result: list[TimelineEvent] = []
    for event in events:
        prev = result[-1] if result else None
        if isinstance(event, Trip) and isinstance(prev, Trip):
            if not (by_mode and _should_keep_modes_apart(prev, event)):
                result[-1] = classify_trip(merge_trips(prev, event), config)
                continue
        result.append(event)
    return result


def prune_short_trips(events: list[TimelineEvent], config: TimelineConfig) -> list[TimelineEvent]:
    """Remove trips too short to be real movement.

    A short trip is folded into the stay before it, otherwise into the stay
    after it. With no neighbouring stay it becomes a stay of its own at the
    centroid of its path.
    """
    result: list[TimelineEvent] = []
    carried_start = None
    for i, event in enumerate(events):
        if isinstance(event, Trip) and _is_short_trip(event, config):
            prev = result[-1] if result else None
            nxt = events[i + 1] if i + 1 < len(events) else None
            if isinstance(prev, Stay):
                result[-1] = dataclasses.replace(prev, end=event.end)
            elif isinstance(nxt, Stay):
                carried_start = event.start if carried_start is None else carried_start
            else:
                lat, lon = centroid(event.path)
                result.append(Stay(start=event.start, end=event.end, latitude=lat, longitude=lon))
            logger.debug("Pruned short trip at %s (%.0f m, %.0f s)",
                         event.start, event.distance_meters, event.duration_seconds)
            continue
        if carried_start is not None:
            event = dataclasses.replace(event, start=carried_start)
            carried_start = None
        result.append(event)
    return result


def merge_nearby_stays(events: list[TimelineEvent], config: TimelineConfig) -> list[TimelineEvent]:
    """Merge stays at the same place.

    Two stays merge when their centroids are within merge_max_distance_meters
    and they are either directly adjacent or separated only by a trip no
    longer than merge_max_time_gap_minutes. The trip is absorbed.
    """
    if not config.is_merge_enabled:
        return events

    result: list[TimelineEvent] = []
    for event in events:
        if isinstance(event, Stay) and result:
            prev = result[-1]
            if isinstance(prev, Stay) and _stay_distance_m(prev, event) <= config.merge_max_distance_meters:
                result[-1] = merge_stays(prev, event)
                continue
            if (
                isinstance(prev, Trip)
                and len(result) >= 2
                and isinstance(result[-2], Stay)
                and prev.duration_seconds <= config.merge_max_time_gap_seconds
                and _stay_distance_m(result[-2], event) <= config.merge_max_distance_meters
            ):
                result.pop()
                result[-1] = merge_stays(result[-1], event)
                continue
        result.append(event)
    return result


def classify_trips(events: list[TimelineEvent], config: TimelineConfig) -> list[TimelineEvent]:
    return [classify_trip(e, config) if isinstance(e, Trip) else e for e in events]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def apply_single(user_id: int, events: list[TimelineEvent], config: TimelineConfig) -> list[TimelineEvent]:
    events = merge_adjacent_trips(events, config)
    events = prune_short_trips(events, config)
    events = merge_nearby_stays(events, config)
    return classify_trips(events, config)


def _stop_runs(path: tuple[GPSPoint, ...], config: TimelineConfig) -> list[tuple[int, int]]:
    """Index ranges of the path where every leg is at or below the stop speed for a stay's duration."""
    runs = []
    start: Optional[int] = None
    for i in range(1, len(path) + 1):
        slow = i < len(path) and instant_speed_kmh(path[i - 1], path[i]) <= config.staypoint_velocity_threshold
        if slow and start is None:
            start = i - 1
        elif not slow and start is not None:
            seconds = (path[i - 1].timestamp - path[start].timestamp).total_seconds()
            if seconds >= config.staypoint_min_duration_seconds:
                runs.append((start, i - 1))
            start = None
    return runs


def split_at_stops(trip: Trip, config: TimelineConfig) -> list[TimelineEvent]:
    """Split a raw trip into trip, stay, trip ... around each internal stop."""
    runs = _stop_runs(trip.path, config)
    if not runs:
        return [trip]

    pieces: list[TimelineEvent] = []
    cursor = 0
    for first, last in runs:
        if first > cursor:
            pieces.append(Trip.from_path(trip.path[cursor:first + 1]))
        lat, lon = centroid(trip.path[first:last + 1])
        pieces.append(Stay(
            start=trip.path[first].timestamp,
            end=trip.path[last].timestamp,
            latitude=lat,
            longitude=lon,
        ))
        cursor = last
    if cursor < len(trip.path) - 1:
        pieces.append(Trip.from_path(trip.path[cursor:]))
    logger.debug("Split trip at %s into %d pieces", trip.start, len(pieces))
    return pieces


def merge_across_short_stops(events: list[TimelineEvent], config: TimelineConfig) -> list[TimelineEvent]:
    """Merge trip, short stay, trip of the same mode when the stay looks like drift."""
    result: list[TimelineEvent] = []
    for event in events:
        if (
            isinstance(event, Trip)
            and len(result) >= 2
            and isinstance(result[-1], Stay)
            and isinstance(result[-2], Trip)
            and result[-2].travel_type is event.travel_type
            and result[-1].duration_seconds <= config.trip_merge_max_gap_seconds
            and point_distance_m(result[-2].path[-1], event.path[0]) < config.merge_max_distance_meters
        ):
            result.pop()
            result[-1] = classify_trip(merge_trips(result[-1], event), config)
            continue
        result.append(event)
    return result


def apply_multiple(user_id: int, events: list[TimelineEvent], config: TimelineConfig) -> list[TimelineEvent]:
    split: list[TimelineEvent] = []
    for event in events:
        split.extend(split_at_stops(event, config) if isinstance(event, Trip) else [event])
    events = classify_trips(split, config)
    events = merge_adjacent_trips(events, config, by_mode=True)
    events = merge_across_short_stops(events, config)
    events = prune_short_trips(events, config)
    events = merge_nearby_stays(events, config)
    return classify_trips(events, config)


TripAlgorithm = Callable[[int, list, TimelineConfig], list]

TRIP_ALGORITHMS: dict[str, TripAlgorithm] = {
    "single": apply_single,
    "multiple": apply_multiple,
}


def refine_timeline(user_id: int, events: list[TimelineEvent], config: TimelineConfig) -> list[TimelineEvent]:
    """Classify, merge and tidy raw segments into the timeline that gets stored."""
    algorithm = TRIP_ALGORITHMS[config.trip_detection_algorithm]
    refined = algorithm(user_id, list(events), config)
    refined = simplify_paths(refined, config)
    assert_contiguous(refined)

    logger.info(
        "User %s: %d raw events -> %d (%d stays, %d trips, %d gaps) using %s",
        user_id, len(events), len(refined),
        sum(isinstance(e, Stay) for e in refined),
        sum(isinstance(e, Trip) for e in refined),
        sum(isinstance(e, DataGap) for e in refined),
        config.trip_detection_algorithm,
    )
    return refined
