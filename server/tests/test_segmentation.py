"""Tests for raw stay/trip/gap segmentation."""

import dataclasses
import datetime

import pytest

from errors import SegmentationInvariantViolation
from events import DataGap, Stay, Trip, assert_contiguous
from segmentation import CANDIDATE_MAX_POINTS, SegmentDetector, SegmentState, detect_segments
from timeline_config import TimelineConfig
from velocity import haversine_m
from tests.gps_test_fixtures import (
    COFFEE_SHOP_CENTER,
    HOME_CENTER,
    METERS_PER_DEGREE_LAT,
    OFFICE_CENTER,
    SCENARIO_CONFIG,
    SCENARIO_START,
    SCENARIO_STAY_END,
    SCENARIO_WALK_END,
    SCENARIO_WALK_START,
    commute_points,
    northbound_points,
    scenario_points,
    stationary_points,
)

T0 = datetime.datetime(2024, 1, 15, 8, 0, 0)
MINUTE = datetime.timedelta(minutes=1)


def _distance_to(event, center):
    return haversine_m(event.latitude, event.longitude, center["latitude"], center["longitude"])


def _kinds(events):
    return [e.kind for e in events]


def _home_walk_office():
    """15 min at home, a 10 minute walk north, 10 min at the destination."""
    home = stationary_points(T0, 4, 5 * MINUTE)
    walk = northbound_points(T0 + 16 * MINUTE, 11, MINUTE, step_m=95.0)
    dest = stationary_points(T0 + 27 * MINUTE, 10, MINUTE, latitude=walk[-1].latitude)
    return home + walk + dest


# =====================================================================
# Commute trace
# =====================================================================

class TestCommuteTrace:
    def test_three_stays_two_trips(self):
        events = detect_segments(commute_points(), TimelineConfig())
        assert _kinds(events) == ["stay", "trip", "stay", "trip", "stay"]

    def test_stay_centroids(self):
        stays = [e for e in detect_segments(commute_points(), TimelineConfig()) if isinstance(e, Stay)]
        assert _distance_to(stays[0], HOME_CENTER) < 50
        assert _distance_to(stays[1], COFFEE_SHOP_CENTER) < 50
        assert _distance_to(stays[2], OFFICE_CENTER) < 50

    def test_timeline_is_contiguous(self):
        events = detect_segments(commute_points(), TimelineConfig())
        assert_contiguous(events)
        assert events[0].start == commute_points()[0].timestamp
        assert events[-1].end == commute_points()[-1].timestamp

    def test_trips_are_unclassified(self):
        trips = [e for e in detect_segments(commute_points(), TimelineConfig()) if isinstance(e, Trip)]
        assert all(t.travel_type.value == "UNKNOWN" for t in trips)
        assert all(t.distance_meters > 400 for t in trips)


# =====================================================================
# Stays
# =====================================================================

class TestStayDetection:
    def test_stationary_points_make_one_stay(self):
        events = detect_segments(stationary_points(T0, 12, 5 * MINUTE), TimelineConfig())
        assert len(events) == 1
        stay = events[0]
        assert isinstance(stay, Stay)
        assert stay.duration_seconds == 55 * 60
        assert _distance_to(stay, HOME_CENTER) < 1

    def test_short_stationary_run_is_not_a_stay(self):
        # 4 minutes never reaches the minimum stay duration
        events = detect_segments(stationary_points(T0, 5, MINUTE), TimelineConfig())
        assert _kinds(events) == ["trip"]

    def test_single_point(self):
        assert detect_segments(stationary_points(T0, 1, MINUTE), TimelineConfig()) == []

    def test_empty_stream(self):
        assert detect_segments([], TimelineConfig()) == []

    def test_single_excursion_is_drift(self):
        points = stationary_points(T0, 12, MINUTE)
        # one fix 80 m away once the stay is confirmed, then back home
        drift = dataclasses.replace(points[9], latitude=points[9].latitude + 80 / METERS_PER_DEGREE_LAT)
        points[9] = drift
        events = detect_segments(points, TimelineConfig())
        assert len(events) == 1
        assert isinstance(events[0], Stay)
        assert _distance_to(events[0], HOME_CENTER) < 1

    def test_inaccurate_fixes_do_not_confirm_a_stay(self):
        points = stationary_points(T0, 12, MINUTE, accuracy=500.0)
        events = detect_segments(points, TimelineConfig())
        assert not any(isinstance(e, Stay) for e in events)

    def test_missing_accuracy_falls_back_to_distance(self):
        points = stationary_points(T0, 12, MINUTE, accuracy=None)
        events = detect_segments(points, TimelineConfig())
        assert _kinds(events) == ["stay"]

    def test_accuracy_ignored_when_disabled(self):
        points = stationary_points(T0, 12, MINUTE, accuracy=500.0)
        events = detect_segments(points, TimelineConfig(use_velocity_accuracy=False))
        assert _kinds(events) == ["stay"]


# =====================================================================
# Trips and arrivals
# =====================================================================

class TestTripDetection:
    def test_stay_trip_stay(self):
        events = detect_segments(_home_walk_office(), TimelineConfig())
        assert _kinds(events) == ["stay", "trip", "stay"]
        home, trip, dest = events
        assert home.start == T0
        assert home.end == T0 + 16 * MINUTE
        assert trip.start == T0 + 16 * MINUTE
        assert trip.end == T0 + 26 * MINUTE
        assert dest.end == T0 + 36 * MINUTE
        assert trip.distance_meters == pytest.approx(950.0, abs=1.0)

    def test_trip_path_spans_the_trip(self):
        trip = detect_segments(_home_walk_office(), TimelineConfig())[1]
        assert trip.path[0].timestamp == trip.start
        assert trip.path[-1].timestamp == trip.end
        assert len(trip.path) == 11

    def test_arrival_by_sustained_slow_legs(self):
        # Fixes every 30 s: three of them span only 60 s, never enough for the
        # 90 s cluster rule but enough for the sustained-stop rule.
        walk = northbound_points(T0, 11, MINUTE, step_m=95.0)
        stop = stationary_points(T0 + datetime.timedelta(minutes=10, seconds=30), 20,
                                 datetime.timedelta(seconds=30), latitude=walk[-1].latitude)

        events = detect_segments(walk + stop, TimelineConfig())
        assert _kinds(events) == ["trip", "stay"]
        assert events[0].end == T0 + 10 * MINUTE

        cluster_only = TimelineConfig(trip_sustained_stop_min_duration_seconds=3600)
        assert _kinds(detect_segments(walk + stop, cluster_only)) == ["trip"]

    def test_moving_stream_is_one_trip(self):
        events = detect_segments(northbound_points(T0, 30, MINUTE, step_m=95.0), TimelineConfig())
        assert _kinds(events) == ["trip"]
        assert events[0].start == T0
        assert events[0].end == T0 + 29 * MINUTE


# =====================================================================
# Data gaps
# =====================================================================

class TestDataGaps:
    def test_scenario_stay_gap_trip(self):
        events = detect_segments(scenario_points(), SCENARIO_CONFIG)
        assert _kinds(events) == ["stay", "data_gap", "trip"]
        stay, gap, trip = events
        assert (stay.start, stay.end) == (SCENARIO_START, SCENARIO_STAY_END)
        assert (gap.start, gap.end) == (SCENARIO_STAY_END, SCENARIO_WALK_START)
        assert (trip.start, trip.end) == (SCENARIO_WALK_START, SCENARIO_WALK_END)
        assert trip.distance_meters == pytest.approx(1425.0, abs=1.0)

    def test_short_silence_is_not_a_gap(self):
        events = detect_segments(scenario_points(), TimelineConfig())
        assert not any(isinstance(e, DataGap) for e in events)

    def test_gap_in_the_middle_of_a_trip(self):
        first = northbound_points(T0, 10, MINUTE, step_m=95.0)
        later = T0 + 9 * MINUTE + datetime.timedelta(hours=4)
        second = northbound_points(later, 10, MINUTE, step_m=95.0, latitude=first[-1].latitude + 0.01)
        events = detect_segments(first + second, TimelineConfig())
        assert _kinds(events) == ["trip", "data_gap", "trip"]
        assert events[1].start == first[-1].timestamp
        assert events[1].end == second[0].timestamp

    def test_gap_between_two_stays(self):
        before = stationary_points(T0, 4, 5 * MINUTE)
        after = stationary_points(T0 + datetime.timedelta(hours=5), 4, 5 * MINUTE)
        events = detect_segments(before + after, TimelineConfig())
        assert _kinds(events) == ["stay", "data_gap", "stay"]

    def test_gap_stay_inference_bridges_a_silent_stay(self):
        before = stationary_points(T0, 4, 5 * MINUTE)
        after = stationary_points(T0 + datetime.timedelta(hours=5), 4, 5 * MINUTE)
        config = TimelineConfig(gap_stay_inference_enabled=True)
        events = detect_segments(before + after, config)
        assert _kinds(events) == ["stay"]
        assert events[0].end == after[-1].timestamp

    def test_gap_stay_inference_respects_max_gap(self):
        before = stationary_points(T0, 4, 5 * MINUTE)
        after = stationary_points(T0 + datetime.timedelta(hours=5), 4, 5 * MINUTE)
        config = TimelineConfig(gap_stay_inference_enabled=True, gap_stay_inference_max_gap_hours=2.0)
        events = detect_segments(before + after, config)
        assert _kinds(events) == ["stay", "data_gap", "stay"]

    def test_gap_stay_inference_needs_the_same_place(self):
        before = stationary_points(T0, 4, 5 * MINUTE)
        after = stationary_points(T0 + datetime.timedelta(hours=5), 4, 5 * MINUTE,
                                  latitude=HOME_CENTER["latitude"] + 0.01)
        config = TimelineConfig(gap_stay_inference_enabled=True)
        events = detect_segments(before + after, config)
        assert _kinds(events) == ["stay", "data_gap", "stay"]


# =====================================================================
# Input checks
# =====================================================================

class TestDetectorInvariants:
    def test_out_of_order_input_raises(self):
        points = stationary_points(T0, 3, MINUTE)
        with pytest.raises(SegmentationInvariantViolation):
            detect_segments([points[1], points[0]], TimelineConfig())

    def test_equal_timestamps_are_accepted(self):
        point = stationary_points(T0, 1, MINUTE)[0]
        detector = SegmentDetector(TimelineConfig())
        detector.feed(point)
        detector.feed(dataclasses.replace(point, source="watch"))
        assert detector.points_seen == 2

    def test_feed_after_finish_raises(self):
        detector = SegmentDetector(TimelineConfig())
        for p in stationary_points(T0, 3, MINUTE):
            detector.feed(p)
        detector.finish()
        with pytest.raises(SegmentationInvariantViolation):
            detector.feed(stationary_points(T0 + 10 * MINUTE, 1, MINUTE)[0])

    def test_finish_is_idempotent(self):
        detector = SegmentDetector(TimelineConfig())
        for p in stationary_points(T0, 12, MINUTE):
            detector.feed(p)
        first = detector.finish()
        assert detector.finish() is first
        assert detector.state is SegmentState.IN_GAP

    def test_confirmed_stay_drops_buffered_points(self):
        detector = SegmentDetector(TimelineConfig())
        for p in stationary_points(T0, 100, MINUTE):
            detector.feed(p)
        assert detector.state is SegmentState.IN_STAY
        assert detector._cluster.confirmed
        assert detector._cluster.points == []

    def test_unconfirmed_candidate_buffer_is_bounded(self):
        points = stationary_points(T0, 20_000, datetime.timedelta(seconds=30), accuracy=150.0)
        detector = SegmentDetector(TimelineConfig())
        largest = 0
        for p in points:
            detector.feed(p)
            largest = max(largest, len(detector._cluster.points))
        assert detector.state is SegmentState.IN_STAY
        assert not detector._cluster.confirmed
        assert largest <= CANDIDATE_MAX_POINTS
        assert detector._cluster.points[0] == points[0]
        assert detector._cluster.points[-1] == points[-1]

        [trip] = detector.finish()
        assert isinstance(trip, Trip)
        assert trip.start == points[0].timestamp
        assert trip.end == points[-1].timestamp
