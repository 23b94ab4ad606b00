"""SQLAlchemy models for raw locations, timeline events and configuration."""

import datetime

from sqlalchemy import Column, Integer, Float, String, DateTime, Text, UniqueConstraint, Index

from database import Base


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Location(Base):
    """A raw GPS fix as received from a tracker."""

    __tablename__ = "locations"
    __table_args__ = (
        UniqueConstraint("user_id", "timestamp", "source", name="uq_location_user_ts_source"),
        Index("ix_locations_user_ts", "user_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)
    speed_kmh = Column(Float, nullable=True)
    source = Column(String, nullable=False, default="unknown")
    timestamp = Column(DateTime, nullable=False)
    received_at = Column(DateTime, default=_utcnow)


class TimelineStay(Base):
    __tablename__ = "timeline_stays"
    __table_args__ = (Index("ix_timeline_stays_user_start", "user_id", "start_time"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    place_id = Column(Integer, nullable=True)
    location_name = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)


class TimelineTrip(Base):
    __tablename__ = "timeline_trips"
    __table_args__ = (Index("ix_timeline_trips_user_start", "user_id", "start_time"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    distance_meters = Column(Float, nullable=False)
    travel_type = Column(String, nullable=False)
    avg_speed_kmh = Column(Float, nullable=True)
    max_speed_kmh = Column(Float, nullable=True)
    path = Column(Text, nullable=False)  # JSON list of [timestamp, lat, lon]
    created_at = Column(DateTime, default=_utcnow)


class TimelineDataGap(Base):
    __tablename__ = "timeline_data_gaps"
    __table_args__ = (Index("ix_timeline_data_gaps_user_start", "user_id", "start_time"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class Config(Base):
    """Key/value settings. Rows with a NULL user_id apply to everyone."""

    __tablename__ = "config"
    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_config_user_key"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    key = Column(String, nullable=False, index=True)
    value = Column(Text, nullable=True)
