"""Storage of raw fixes and timeline events.

``PointStorage`` is the interface the generation pipeline depends on.
``SqlTimelineStore`` implements it on top of the SQLAlchemy models. Every
write runs in a single transaction, so a failed write leaves the previously
stored timeline as it was.
"""

import datetime
import json
import logging
from typing import Iterable, Optional, Protocol, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import StorageUnavailable
from events import DataGap, GPSPoint, Stay, TimelineEvent, TravelType, Trip
from models import Location, TimelineDataGap, TimelineStay, TimelineTrip

logger = logging.getLogger(__name__)


class PointStorage(Protocol):
    def fetch_chunk(self, user_id: int, from_ts: datetime.datetime, offset: int, limit: int) -> list[GPSPoint]:
        ...

    def replace_timeline_events(self, user_id: int, events: Sequence[TimelineEvent]) -> None:
        ...

    def append_timeline_events(
        self, user_id: int, events: Sequence[TimelineEvent], from_ts: datetime.datetime,
    ) -> None:
        ...

    def latest_stay_start(self, user_id: int) -> Optional[datetime.datetime]:
        ...

    def list_user_ids(self) -> list[int]:
        ...


# ---------------------------------------------------------------------------
# Row <-> event conversion
# ---------------------------------------------------------------------------

def _encode_path(path: Sequence[GPSPoint]) -> str:
    return json.dumps([[p.timestamp.isoformat(), p.latitude, p.longitude] for p in path])


def _decode_path(raw: str) -> tuple[GPSPoint, ...]:
    return tuple(
        GPSPoint(timestamp=datetime.datetime.fromisoformat(ts), latitude=lat, longitude=lon)
        for ts, lat, lon in json.loads(raw)
    )


def _event_to_row(user_id: int, event: TimelineEvent):
    duration = int(event.duration_seconds)
    if isinstance(event, Stay):
        return TimelineStay(
            user_id=user_id,
            start_time=event.start,
            end_time=event.end,
            duration_seconds=duration,
            latitude=event.latitude,
            longitude=event.longitude,
            place_id=event.place_id,
            location_name=event.location_name,
        )
    if isinstance(event, Trip):
        return TimelineTrip(
            user_id=user_id,
            start_time=event.start,
            end_time=event.end,
            duration_seconds=duration,
            distance_meters=event.distance_meters,
            travel_type=event.travel_type.value,
            avg_speed_kmh=event.avg_speed_kmh,
            max_speed_kmh=event.max_speed_kmh,
            path=_encode_path(event.path),
        )
    if isinstance(event, DataGap):
        return TimelineDataGap(
            user_id=user_id,
            start_time=event.start,
            end_time=event.end,
            duration_seconds=duration,
        )
    raise TypeError(f"Not a timeline event: {event!r}")


def _row_to_event(row) -> TimelineEvent:
    if isinstance(row, TimelineStay):
        return Stay(
            start=row.start_time,
            end=row.end_time,
            latitude=row.latitude,
            longitude=row.longitude,
            place_id=row.place_id,
            location_name=row.location_name,
        )
    if isinstance(row, TimelineTrip):
        return Trip(
            start=row.start_time,
            end=row.end_time,
            distance_meters=row.distance_meters,
            path=_decode_path(row.path),
            travel_type=TravelType(row.travel_type),
            avg_speed_kmh=row.avg_speed_kmh or 0.0,
            max_speed_kmh=row.max_speed_kmh or 0.0,
        )
    return DataGap(start=row.start_time, end=row.end_time)


_EVENT_TABLES = (TimelineStay, TimelineTrip, TimelineDataGap)


# ---------------------------------------------------------------------------
# SQLAlchemy store
# ---------------------------------------------------------------------------

class SqlTimelineStore:
    """PointStorage backed by a SQLAlchemy session factory."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def fetch_chunk(self, user_id: int, from_ts: datetime.datetime, offset: int, limit: int) -> list[GPSPoint]:
        db: Session = self.session_factory()
        try:
            rows = (
                db.query(Location)
                .filter(Location.user_id == user_id, Location.timestamp >= from_ts)
                .order_by(Location.timestamp.asc(), Location.id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [
                GPSPoint(
                    timestamp=r.timestamp,
                    latitude=r.latitude,
                    longitude=r.longitude,
                    accuracy=r.accuracy,
                    speed=r.speed_kmh,
                    source=r.source,
                )
                for r in rows
            ]
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Reading points for user {user_id} failed: {exc}") from exc
        finally:
            db.close()

    def replace_timeline_events(self, user_id: int, events: Sequence[TimelineEvent]) -> None:
        """Swap the user's whole timeline for *events* in one transaction."""
        self._rewrite(user_id, events, from_ts=None)
        logger.info("Replaced timeline for user %s with %d events", user_id, len(events))

    def append_timeline_events(
        self, user_id: int, events: Sequence[TimelineEvent], from_ts: datetime.datetime,
    ) -> None:
        """Replace the user's events starting at or after *from_ts* with *events*."""
        self._rewrite(user_id, events, from_ts=from_ts)
        logger.info("Rewrote timeline for user %s from %s with %d events", user_id, from_ts, len(events))

    def _rewrite(self, user_id: int, events: Sequence[TimelineEvent], from_ts: Optional[datetime.datetime]):
        db: Session = self.session_factory()
        try:
            for table in _EVENT_TABLES:
                query = db.query(table).filter(table.user_id == user_id)
                if from_ts is not None:
                    query = query.filter(table.start_time >= from_ts)
                query.delete(synchronize_session=False)
            db.add_all(_event_to_row(user_id, e) for e in events)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageUnavailable(f"Writing timeline for user {user_id} failed: {exc}") from exc
        finally:
            db.close()

    def latest_stay_start(self, user_id: int) -> Optional[datetime.datetime]:
        db: Session = self.session_factory()
        try:
            return (
                db.query(func.max(TimelineStay.start_time))
                .filter(TimelineStay.user_id == user_id)
                .scalar()
            )
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Reading timeline for user {user_id} failed: {exc}") from exc
        finally:
            db.close()

    def list_user_ids(self) -> list[int]:
        db: Session = self.session_factory()
        try:
            return [uid for (uid,) in db.query(Location.user_id).distinct().order_by(Location.user_id).all()]
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Listing users failed: {exc}") from exc
        finally:
            db.close()

    def load_timeline(
        self,
        user_id: int,
        start: Optional[datetime.datetime] = None,
        end: Optional[datetime.datetime] = None,
    ) -> list[TimelineEvent]:
        """Stored events for the user in time order, optionally limited to those overlapping [start, end]."""
        db: Session = self.session_factory()
        try:
            rows = []
            for table in _EVENT_TABLES:
                query = db.query(table).filter(table.user_id == user_id)
                if start is not None:
                    query = query.filter(table.end_time >= start)
                if end is not None:
                    query = query.filter(table.start_time <= end)
                rows.extend(query.all())
            events = [_row_to_event(r) for r in rows]
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Reading timeline for user {user_id} failed: {exc}") from exc
        finally:
            db.close()
        return sorted(events, key=lambda e: (e.start, e.end))

    def last_point_time(self, user_id: int) -> Optional[datetime.datetime]:
        db: Session = self.session_factory()
        try:
            return db.query(func.max(Location.timestamp)).filter(Location.user_id == user_id).scalar()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Reading points for user {user_id} failed: {exc}") from exc
        finally:
            db.close()

    def save_points(self, user_id: int, points: Iterable[GPSPoint]) -> int:
        """Insert fixes, skipping ones already stored for the same timestamp and source.

        Returns the number of new rows.
        """
        db: Session = self.session_factory()
        try:
            seen = {
                (ts, src) for ts, src in
                db.query(Location.timestamp, Location.source).filter(Location.user_id == user_id).all()
            }
            added = 0
            for p in points:
                key = (p.timestamp, p.source)
                if key in seen:
                    continue
                seen.add(key)
                db.add(Location(
                    user_id=user_id,
                    latitude=p.latitude,
                    longitude=p.longitude,
                    accuracy=p.accuracy,
                    speed_kmh=p.speed,
                    source=p.source,
                    timestamp=p.timestamp,
                ))
                added += 1
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise StorageUnavailable(f"Duplicate fix for user {user_id}: {exc}") from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageUnavailable(f"Saving points for user {user_id} failed: {exc}") from exc
        finally:
            db.close()
        logger.info("Saved %d new points for user %s", added, user_id)
        return added
