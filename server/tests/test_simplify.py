"""Tests for trip path simplification."""

import datetime

import pytest

from events import GPSPoint, Trip
from simplify import adaptive_tolerance, simplify_path, simplify_paths, simplify_trip_path
from timeline_config import TimelineConfig
from tests.gps_test_fixtures import METERS_PER_DEGREE_LAT, northbound_points

T0 = datetime.datetime(2024, 1, 15, 8, 0, 0)
MINUTE = datetime.timedelta(minutes=1)


def _zigzag(count, offset_m):
    """Heads north, alternating *offset_m* east and west of the line."""
    points = northbound_points(T0, count, MINUTE, step_m=100.0)
    lon_step = offset_m / (METERS_PER_DEGREE_LAT * 0.79)
    return [
        GPSPoint(timestamp=p.timestamp, latitude=p.latitude,
                 longitude=p.longitude + (lon_step if i % 2 else -lon_step))
        for i, p in enumerate(points)
    ]


class TestSimplifyPath:
    def test_straight_line_keeps_end_points(self):
        points = northbound_points(T0, 50, MINUTE, step_m=100.0)
        simplified = simplify_path(points, 10.0)
        assert simplified == [points[0], points[-1]]

    def test_corner_is_kept(self):
        north = northbound_points(T0, 10, MINUTE, step_m=100.0)
        corner = north[-1]
        east = [
            GPSPoint(timestamp=corner.timestamp + (i + 1) * MINUTE, latitude=corner.latitude,
                     longitude=corner.longitude + (i + 1) * 0.0011)
            for i in range(10)
        ]
        simplified = simplify_path(north + east, 10.0)
        assert corner in simplified
        assert len(simplified) == 3

    def test_short_paths_are_untouched(self):
        points = northbound_points(T0, 2, MINUTE, step_m=100.0)
        assert simplify_path(points, 10.0) == points

    def test_zero_tolerance_is_a_copy(self):
        points = _zigzag(10, 30.0)
        assert simplify_path(points, 0) == points


class TestAdaptiveTolerance:
    @pytest.mark.parametrize("distance_m, factor", [
        (500, 0.5),
        (3000, 1.0),
        (10_000, 1.5),
        (50_000, 2.0),
    ])
    def test_tiers(self, distance_m, factor):
        assert adaptive_tolerance(distance_m, 15.0) == pytest.approx(15.0 * factor)


class TestSimplifyTripPath:
    def test_max_points_is_enforced(self):
        trip = Trip.from_path(_zigzag(400, 200.0))
        path = simplify_trip_path(trip, TimelineConfig(path_max_points=50))
        assert len(path) <= 50
        assert path[0] == trip.path[0]
        assert path[-1] == trip.path[-1]

    def test_zero_max_points_means_no_limit(self):
        trip = Trip.from_path(_zigzag(400, 200.0))
        path = simplify_trip_path(trip, TimelineConfig(path_max_points=0))
        assert len(path) == 400

    def test_only_trips_are_touched(self):
        trip = Trip.from_path(northbound_points(T0, 30, MINUTE, step_m=100.0))
        events = simplify_paths([trip], TimelineConfig())
        assert len(events[0].path) == 2
        assert events[0].distance_meters == trip.distance_meters
