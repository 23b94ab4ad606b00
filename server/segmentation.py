"""Raw segmentation of an ordered fix stream into stays, trips and data gaps.

The detector is a small state machine fed one fix at a time:

- IN_GAP: no open segment (start of stream, or right after a data gap).
  The next fix opens a candidate stay.
- IN_STAY: fixes cluster around a running centroid. A candidate becomes a
  confirmed stay once it has lasted ``staypoint_min_duration_minutes`` and its
  fixes are accurate enough to trust. A confirmed stay is only left after
  ``staypoint_exit_confirm_points`` consecutive fixes outside the radius; an
  excursion that comes back inside is treated as drift.
- IN_TRIP: movement. Every new fix re-checks the last three fixes of the
  path for an arrival: either they sit inside the staypoint radius for
  ``trip_arrival_min_duration_seconds``, or every leg between them is at or
  below ``staypoint_velocity_threshold`` for
  ``trip_sustained_stop_min_duration_seconds``. The trip is then cut where
  stopping began and those fixes seed the next candidate stay. If that
  candidate breaks up before it is confirmed the trip simply carries on.

Any lapse that qualifies as a data gap closes whatever segment is open at the
last fix before it. Events share their boundary fixes, so the output is
contiguous by construction.

An open trip keeps its path, which becomes the trip's path. A candidate stay
keeps at most ``CANDIDATE_MAX_POINTS`` fixes, thinned as it grows, so a long
stretch that never becomes reliable enough to confirm stays bounded. Once
confirmed, a stay is a handful of running sums no matter how long it lasts.
"""

import enum
import logging
from typing import Iterable, Optional

from errors import SegmentationInvariantViolation
from events import GPSPoint, Stay, TimelineEvent, Trip, assert_contiguous
from gaps import make_data_gap, should_create_data_gap
from timeline_config import TimelineConfig
from velocity import centroid, haversine_m, instant_speed_kmh

logger = logging.getLogger(__name__)

ARRIVAL_WINDOW = 3
CANDIDATE_MAX_POINTS = 500


class SegmentState(enum.Enum):
    IN_GAP = "in_gap"
    IN_STAY = "in_stay"
    IN_TRIP = "in_trip"


class _StayCluster:
    """Running aggregate of the fixes belonging to one stay."""

    def __init__(self, config: TimelineConfig):
        self.config = config
        self.first: Optional[GPSPoint] = None
        self.last_inside: Optional[GPSPoint] = None
        self.confirmed = False
        self.points: list[GPSPoint] = []  # cleared on confirmation
        self._count = 0
        self._sum_lat = 0.0
        self._sum_lon = 0.0
        self._with_accuracy = 0
        self._accurate = 0
        self._acc_sum_lat = 0.0
        self._acc_sum_lon = 0.0

    def add(self, point: GPSPoint):
        if self.first is None:
            self.first = point
        self.last_inside = point
        self._count += 1
        self._sum_lat += point.latitude
        self._sum_lon += point.longitude
        if point.accuracy is not None:
            self._with_accuracy += 1
            if point.accuracy <= self.config.staypoint_max_accuracy_threshold:
                self._accurate += 1
                self._acc_sum_lat += point.latitude
                self._acc_sum_lon += point.longitude
        if not self.confirmed:
            self.points.append(point)
            if len(self.points) > CANDIDATE_MAX_POINTS:
                # Thin to every other fix; the first and the latest are always kept
                self.points = self.points[:-1:2] + [point]

    @property
    def centroid(self) -> tuple[float, float]:
        # Accurate fixes only, when there are any
        if self._accurate:
            return self._acc_sum_lat / self._accurate, self._acc_sum_lon / self._accurate
        return self._sum_lat / self._count, self._sum_lon / self._count

    @property
    def duration_seconds(self) -> float:
        return (self.last_inside.timestamp - self.first.timestamp).total_seconds()

    def contains(self, point: GPSPoint) -> bool:
        lat, lon = self.centroid
        return haversine_m(lat, lon, point.latitude, point.longitude) <= self.config.staypoint_radius_meters

    def is_reliable(self) -> bool:
        """Enough accurate fixes to trust the cluster.

        With too few fixes reporting accuracy at all, fall back to distance-only clustering.
        """
        cfg = self.config
        if not cfg.use_velocity_accuracy or self._with_accuracy < cfg.staypoint_min_accurate_points:
            return True
        return (
            self._accurate >= cfg.staypoint_min_accurate_points
            and self._accurate / self._count >= cfg.staypoint_min_accuracy_ratio
        )

    def qualifies(self) -> bool:
        return self.duration_seconds >= self.config.staypoint_min_duration_seconds and self.is_reliable()

    def confirm(self):
        self.confirmed = True
        self.points = []

    def to_stay(self) -> Stay:
        lat, lon = self.centroid
        return Stay(
            start=self.first.timestamp,
            end=self.last_inside.timestamp,
            latitude=lat,
            longitude=lon,
        )


class SegmentDetector:
    """Turns an ordered fix stream into raw, contiguous timeline events.

    Feed fixes with :meth:`feed` and call :meth:`finish` once the stream is
    exhausted. Trips come out unclassified; see ``trips.refine_timeline``.
    """

    def __init__(self, config: TimelineConfig):
        self.config = config
        self.state = SegmentState.IN_GAP
        self.events: list[TimelineEvent] = []
        self.points_seen = 0
        self._last: Optional[GPSPoint] = None
        self._cluster: Optional[_StayCluster] = None
        self._outside: list[GPSPoint] = []
        self._trip_path: list[GPSPoint] = []
        self._finished = False

    # -- input --------------------------------------------------------------

    def feed(self, point: GPSPoint):
        if self._finished:
            raise SegmentationInvariantViolation("Fix fed after the detector was finished")
        last = self._last
        if last is not None and point.timestamp < last.timestamp:
            raise SegmentationInvariantViolation(
                f"Fixes out of order: {point.timestamp} arrived after {last.timestamp}"
            )
        self.points_seen += 1
        self._last = point

        if last is not None and should_create_data_gap(self.config, last.timestamp, point.timestamp):
            if self._bridges_gap(last, point):
                self._cluster.add(point)
                return
            self._close_open_segment()
            self.events.append(make_data_gap(last.timestamp, point.timestamp))
            logger.debug("Data gap %s -> %s", last.timestamp, point.timestamp)

        if self.state is SegmentState.IN_GAP:
            self._open_stay([point])
        elif self.state is SegmentState.IN_STAY:
            self._feed_stay(point)
        else:
            self._trip_path.append(point)
            self._check_arrival()

    def finish(self) -> list[TimelineEvent]:
        """Close the open segment at the last fix and return the events."""
        if not self._finished:
            self._close_open_segment()
            self._finished = True
            assert_contiguous(self.events)
        return self.events

    # -- stays --------------------------------------------------------------

    def _open_stay(self, points: list[GPSPoint]):
        cluster = _StayCluster(self.config)
        for p in points:
            cluster.add(p)
        self._cluster = cluster
        self._outside = []
        self.state = SegmentState.IN_STAY
        self._maybe_confirm()

    def _feed_stay(self, point: GPSPoint):
        cluster = self._cluster
        if cluster.contains(point):
            cluster.add(point)
            self._outside.clear()
            self._maybe_confirm()
            return

        if not cluster.confirmed:
            # Candidate broke up before it became a stay: its fixes were movement.
            self._trip_path = self._candidate_path() + [point]
            self._cluster = None
            self.state = SegmentState.IN_TRIP
            self._check_arrival()
            return

        self._outside.append(point)
        if len(self._outside) >= self.config.staypoint_exit_confirm_points:
            self.events.append(cluster.to_stay())
            self._trip_path = [cluster.last_inside] + self._outside
            self._outside = []
            self._cluster = None
            self.state = SegmentState.IN_TRIP
            self._check_arrival()

    def _maybe_confirm(self):
        cluster = self._cluster
        if cluster.confirmed or not cluster.qualifies():
            return
        if self._trip_path:
            # The pending trip ends on the fix that opened this stay
            self.events.append(Trip.from_path(self._trip_path))
            self._trip_path = []
        cluster.confirm()

    def _candidate_path(self) -> list[GPSPoint]:
        """Pending trip fixes followed by the unconfirmed candidate's fixes."""
        points = self._cluster.points
        if self._trip_path:
            return self._trip_path + points[1:]
        return list(points)

    def _bridges_gap(self, last: GPSPoint, point: GPSPoint) -> bool:
        """Whether a silent stretch inside a confirmed stay can be read as staying put."""
        cfg = self.config
        if not cfg.gap_stay_inference_enabled:
            return False
        if self.state is not SegmentState.IN_STAY or not self._cluster.confirmed or self._outside:
            return False
        if (point.timestamp - last.timestamp).total_seconds() > cfg.gap_stay_inference_max_gap_seconds:
            return False
        return self._cluster.contains(point)

    # -- trips --------------------------------------------------------------

    def _leg_speed(self, prev: GPSPoint, cur: GPSPoint) -> float:
        if cur.speed is not None:
            return cur.speed
        return instant_speed_kmh(prev, cur)

    def _is_arrival(self, window: list[GPSPoint]) -> bool:
        cfg = self.config
        span = (window[-1].timestamp - window[0].timestamp).total_seconds()

        lat, lon = centroid(window)
        clustered = all(
            haversine_m(lat, lon, p.latitude, p.longitude) <= cfg.staypoint_radius_meters
            for p in window
        )
        if clustered and span >= cfg.trip_arrival_min_duration_seconds:
            return True

        slow = all(
            self._leg_speed(window[i - 1], window[i]) <= cfg.staypoint_velocity_threshold
            for i in range(1, len(window))
        )
        return slow and span >= cfg.trip_sustained_stop_min_duration_seconds

    def _check_arrival(self):
        path = self._trip_path
        if len(path) < ARRIVAL_WINDOW + 1:
            return
        window = path[-ARRIVAL_WINDOW:]
        if not self._is_arrival(window):
            return
        # Keep the trip pending until the new stay is confirmed; it ends on window[0].
        del path[-(ARRIVAL_WINDOW - 1):]
        self._open_stay(window)

    # -- closing ------------------------------------------------------------

    def _close_open_segment(self):
        if self.state is SegmentState.IN_STAY:
            cluster = self._cluster
            if cluster.confirmed:
                self.events.append(cluster.to_stay())
                if self._outside:
                    self.events.append(Trip.from_path([cluster.last_inside] + self._outside))
            else:
                path = self._candidate_path()
                if len(path) >= 2:
                    self.events.append(Trip.from_path(path))
        elif self.state is SegmentState.IN_TRIP and len(self._trip_path) >= 2:
            self.events.append(Trip.from_path(self._trip_path))

        self._cluster = None
        self._outside = []
        self._trip_path = []
        self.state = SegmentState.IN_GAP


def detect_segments(points: Iterable[GPSPoint], config: TimelineConfig) -> list[TimelineEvent]:
    """Run a detector over *points* and return the raw events."""
    detector = SegmentDetector(config)
    for point in points:
        detector.feed(point)
    return detector.finish()
