"""Data gap detection.

A data gap is a stretch of time with no usable fixes. Only lapses longer than
``data_gap_threshold_seconds`` and at least ``data_gap_min_duration_seconds``
long are reported; shorter lapses stay inside the surrounding stay or trip.
"""

import datetime
import logging
from typing import Iterable, Optional

from events import DataGap
from timeline_config import TimelineConfig

logger = logging.getLogger(__name__)


def should_create_data_gap(
    config: TimelineConfig, start: datetime.datetime, end: datetime.datetime,
) -> bool:
    seconds = (end - start).total_seconds()
    return (
        seconds > config.data_gap_threshold_seconds
        and seconds >= config.data_gap_min_duration_seconds
    )


def make_data_gap(start: datetime.datetime, end: datetime.datetime) -> DataGap:
    if end < start:
        raise ValueError(f"Data gap ends before it starts: {start} > {end}")
    return DataGap(start=start, end=end)


def find_data_gaps(
    timestamps: Iterable[datetime.datetime], config: TimelineConfig,
) -> list[DataGap]:
    """Scan an ordered run of fix timestamps and return every reportable gap."""
    gaps = []
    previous = None
    for ts in timestamps:
        if previous is not None and should_create_data_gap(config, previous, ts):
            gaps.append(make_data_gap(previous, ts))
        previous = ts
    return gaps


def ongoing_data_gap(
    last_point_time: Optional[datetime.datetime],
    now: datetime.datetime,
    config: TimelineConfig,
) -> Optional[DataGap]:
    """Gap from the most recent fix up to *now*, when the device has been silent long enough."""
    if last_point_time is None or not should_create_data_gap(config, last_point_time, now):
        return None
    logger.debug("Ongoing data gap since %s", last_point_time)
    return make_data_gap(last_point_time, now)
