"""Bounded-memory streaming of a user's GPS fixes."""

import datetime
import logging
from typing import Iterator

from errors import StorageUnavailable
from events import GPSPoint

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000


class PointSource:
    """Forward-only, single-pass iterator over a user's fixes from *from_ts* onwards.

    Fixes are fetched from *storage* ``chunk_size`` at a time at increasing
    offsets; iteration stops once a chunk comes back short. At most one chunk
    is referenced at any moment. Iterating a second time yields nothing, build
    a new PointSource to rescan.
    """

    def __init__(self, storage, user_id: int, from_ts: datetime.datetime,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.storage = storage
        self.user_id = user_id
        self.from_ts = from_ts
        self.chunk_size = chunk_size
        self.points_consumed = 0
        self.chunks_fetched = 0
        self._started = False

    def __iter__(self) -> Iterator[GPSPoint]:
        if self._started:
            return iter(())
        self._started = True
        return self._stream()

    def _fetch(self, offset: int) -> list[GPSPoint]:
        try:
            chunk = self.storage.fetch_chunk(self.user_id, self.from_ts, offset, self.chunk_size)
        except StorageUnavailable:
            raise
        except Exception as exc:
            raise StorageUnavailable(
                f"Fetching points for user {self.user_id} at offset {offset} failed: {exc}"
            ) from exc
        self.chunks_fetched += 1
        return chunk

    def _stream(self) -> Iterator[GPSPoint]:
        offset = 0
        last_key = None
        while True:
            chunk = self._fetch(offset)
            size = len(chunk)
            offset += size
            for point in chunk:
                key = (point.timestamp, point.source)
                if key == last_key:
                    continue
                last_key = key
                self.points_consumed += 1
                yield point
            del chunk
            if size < self.chunk_size:
                break
        logger.debug(
            "Streamed %d points for user %s in %d chunks",
            self.points_consumed, self.user_id, self.chunks_fetched,
        )
