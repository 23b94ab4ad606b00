"""Value types for the movement timeline.

A timeline is an ordered list of Stay, Trip and DataGap events. Events are
contiguous: the end of each event is the start of the next one. All values are
immutable; the pipeline builds new events with ``dataclasses.replace`` instead
of mutating them.
"""

import datetime
import enum
from dataclasses import dataclass
from typing import ClassVar, Optional, Sequence, Union

from errors import SegmentationInvariantViolation
from velocity import path_distance_m


@dataclass(frozen=True, slots=True)
class GPSPoint:
    """A single location fix.

    Attributes:
        timestamp: When the fix was taken (naive UTC).
        latitude: Latitude in decimal degrees.
        longitude: Longitude in decimal degrees.
        accuracy: Horizontal accuracy in metres, None when the device did not report one.
        speed: Device-reported speed in km/h, None when unknown.
        source: Tag of the device or integration that produced the fix.
    """

    timestamp: datetime.datetime
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    source: str = "unknown"


class TravelType(str, enum.Enum):
    WALK = "WALK"
    CAR = "CAR"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True, slots=True)
class Stay:
    kind: ClassVar[str] = "stay"

    start: datetime.datetime
    end: datetime.datetime
    latitude: float
    longitude: float
    place_id: Optional[int] = None
    location_name: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()


@dataclass(frozen=True, slots=True)
class Trip:
    kind: ClassVar[str] = "trip"

    start: datetime.datetime
    end: datetime.datetime
    distance_meters: float
    path: tuple[GPSPoint, ...]
    travel_type: TravelType = TravelType.UNKNOWN
    avg_speed_kmh: float = 0.0
    max_speed_kmh: float = 0.0

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    @classmethod
    def from_path(cls, path: Sequence[GPSPoint]) -> "Trip":
        """Build an unclassified trip spanning the first to the last point of *path*."""
        if len(path) < 2:
            raise ValueError("A trip needs at least two points")
        return cls(
            start=path[0].timestamp,
            end=path[-1].timestamp,
            distance_meters=path_distance_m(path),
            path=tuple(path),
        )


@dataclass(frozen=True, slots=True)
class DataGap:
    kind: ClassVar[str] = "data_gap"

    start: datetime.datetime
    end: datetime.datetime

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()


TimelineEvent = Union[Stay, Trip, DataGap]


def assert_contiguous(events: Sequence[TimelineEvent]) -> None:
    """Raise SegmentationInvariantViolation unless every event ends where the next starts."""
    for i, event in enumerate(events):
        if event.end < event.start:
            raise SegmentationInvariantViolation(
                f"Event {i} ({event.kind}) ends before it starts: {event.start} > {event.end}"
            )
        if i and events[i - 1].end != event.start:
            prev = events[i - 1]
            raise SegmentationInvariantViolation(
                f"Events {i - 1} ({prev.kind}) and {i} ({event.kind}) are not contiguous: "
                f"{prev.end} != {event.start}"
            )
